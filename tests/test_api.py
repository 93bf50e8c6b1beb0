"""
HTTP facade tests. The orchestrator and the saved-item store are mocked,
except for the event stream, which runs against a real orchestrator.
"""

import asyncio
import json
import re
from unittest.mock import MagicMock

import pytest
import requests
from fastapi.testclient import TestClient

import api.main as main
from api.models import JobRequest, Queued, Succeeded
from storage.jsonbin import JsonBin
from worker.errors import TransportError, ValidationError
from worker.orchestrator import CompletedJob, JobOrchestrator


@pytest.fixture
def orch():
    o = MagicMock(spec=JobOrchestrator)
    o.phase = "idle"
    o.job_id = None
    o.state = None
    o.last_result = None
    o.artifact_urls.return_value = []
    return o


@pytest.fixture
def store():
    return MagicMock(spec=JsonBin)


@pytest.fixture
def http(orch, store):
    return TestClient(main.create_app(orchestrator=orch, store=store))


def finished(orch, prompt="a cat", outputs=("https://x/a.png",), output_format="png"):
    request = JobRequest.model_validate({"prompt": prompt, "settings": {"outputFormat": output_format}})
    orch.last_result = CompletedJob("job-1", request, Succeeded(outputs=outputs))
    orch.artifact_urls.return_value = list(outputs)


def test_health(http):
    assert http.get("/health").json() == {"ok": True}


class TestGenerate:

    def test_submits_request_and_reports_status(self, http, orch):
        orch.phase = "submitting"

        resp = http.post("/generate", json={"prompt": "a cat", "settings": {"aspectRatio": "16:9"}})

        assert resp.status_code == 202
        assert resp.json() == {"phase": "submitting", "job_id": None, "state": None}
        submitted = orch.submit.call_args.args[0]
        assert submitted.prompt == "a cat"
        assert submitted.settings.aspect_ratio == "16:9"

    def test_blank_prompt_is_bad_request(self, http, orch):
        orch.submit.side_effect = ValidationError("Prompt must not be empty")

        resp = http.post("/generate", json={"prompt": "  "})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Prompt must not be empty"

    def test_invalid_settings_never_reach_orchestrator(self, http, orch):
        resp = http.post("/generate", json={"prompt": "a cat", "settings": {"numOutputs": 9}})

        assert resp.status_code == 422
        orch.submit.assert_not_called()


def test_cancel(http, orch):
    orch.cancel.return_value = False

    assert http.post("/cancel").json() == {"cancelled": False}
    orch.cancel.assert_called_once_with()


def test_state_reports_latest_snapshot(http, orch):
    orch.phase = "polling"
    orch.job_id = "job-1"
    orch.state = Succeeded(outputs=("u",))

    assert http.get("/state").json() == {
        "phase": "polling",
        "job_id": "job-1",
        "state": {"status": "succeeded", "outputs": ["u"]},
    }


class TestSaved:

    def test_save_defaults_outputs_to_last_job_for_same_prompt(self, http, orch, store):
        finished(orch, prompt="a cat")

        resp = http.post("/saved", json={"prompt": "a cat", "tags": ["fav"]})

        assert resp.status_code == 201
        body = resp.json()
        assert body["outputs"] == ["https://x/a.png"]
        assert body["tags"] == ["fav"]
        item_id, payload = store.put_saved.call_args.args
        assert item_id == body["id"]
        assert payload["prompt"] == "a cat"

    def test_save_other_prompt_has_no_outputs(self, http, orch, store):
        finished(orch, prompt="a cat")

        resp = http.post("/saved", json={"prompt": "a dog", "notes": "try later"})

        assert resp.json()["outputs"] == []

    def test_store_failure_is_bad_gateway(self, http, store):
        store.put_saved.side_effect = requests.ConnectionError("down")

        assert http.post("/saved", json={"prompt": "a cat"}).status_code == 502

    def test_list_and_get(self, http, store):
        item = {
            "id": "s1", "prompt": "a cat", "settings": {"output_format": "webp"},
            "notes": "", "tags": [], "outputs": [], "created_at": "2026-10-18T10:00:00+00:00",
        }
        store.list_saved.return_value = [item]
        store.get_saved.return_value = item

        listed = http.get("/saved").json()
        fetched = http.get("/saved/s1").json()

        assert [i["id"] for i in listed] == ["s1"]
        assert fetched["settings"]["outputFormat"] == "webp"

    def test_get_missing(self, http, store):
        store.get_saved.return_value = None

        assert http.get("/saved/nope").status_code == 404

    def test_delete(self, http, store):
        store.delete_saved.side_effect = [True, False]

        assert http.delete("/saved/s1").status_code == 204
        assert http.delete("/saved/s1").status_code == 404


class TestDownload:

    def test_no_artifacts(self, http):
        assert http.get("/download/0").status_code == 404

    def test_returns_artifact_as_attachment(self, http, orch, monkeypatch):
        finished(orch, output_format="png")
        fetched = []

        def fake_fetch(url, output_format="jpg"):
            fetched.append((url, output_format))
            return b"\x89PNG", "image/png"

        monkeypatch.setattr(main, "fetch_artifact", fake_fetch)

        resp = http.get("/download/0")

        assert resp.status_code == 200
        assert resp.content == b"\x89PNG"
        assert resp.headers["content-type"] == "image/png"
        assert re.search(r'filename="generated-image-\d+\.png"', resp.headers["content-disposition"])
        assert fetched == [("https://x/a.png", "png")]

    def test_index_out_of_range(self, http, orch):
        finished(orch)

        assert http.get("/download/1").status_code == 404

    def test_fetch_failure_is_bad_gateway(self, http, orch, monkeypatch):
        finished(orch)

        def failing_fetch(url, output_format="jpg"):
            raise TransportError("unreachable")

        monkeypatch.setattr(main, "fetch_artifact", failing_fetch)

        assert http.get("/download/0").status_code == 502


class TestEvents:

    @staticmethod
    async def next_event(body, timeout=2.0):
        frame = await asyncio.wait_for(body.__anext__(), timeout)
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        return json.loads(frame[len("data: "):])

    @pytest.mark.asyncio
    async def test_streams_current_then_new_snapshots(self, client, make_request, happy_path):
        orch = JobOrchestrator(client, poll_interval=0, job_timeout=None)
        client.script("earlier", Succeeded(outputs=("https://x/old.jpg",)))
        client.script("a red fox in the snow", *happy_path)
        async for _ in orch.submit(make_request("earlier")):
            pass

        resp = await main.events(orch)
        assert resp.media_type == "text/event-stream"
        orch.submit(make_request())

        received = [await self.next_event(resp.body_iterator) for _ in range(4)]

        assert received == [
            {"status": "succeeded", "outputs": ["https://x/old.jpg"]},
            {"status": "queued"},
            {"status": "processing"},
            {"status": "succeeded", "outputs": ["https://x/a.jpg"]},
        ]

        await resp.body_iterator.aclose()
        assert orch._subscribers == []
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_orchestrator_shutdown_ends_event_stream(self, client, make_request):
        orch = JobOrchestrator(client, poll_interval=0.01, job_timeout=None)
        client.script("a red fox in the snow", Queued(), [Queued()])

        resp = await main.events(orch)
        orch.submit(make_request())
        assert await self.next_event(resp.body_iterator) == {"status": "queued"}

        await orch.aclose()

        assert orch._subscribers == []
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(resp.body_iterator.__anext__(), 2.0)
