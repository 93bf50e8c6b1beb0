"""
Shared fixtures: a scripted stand-in for JobClient and request builders.
"""

import threading
from typing import Dict, List

import pytest

from api.models import GenerationSettings, JobRequest, Processing, Queued, Succeeded


class ScriptedClient:
    """
    Replays a per-prompt script.
    - created: state returned by create(), or an exception to raise
    - statuses: successive fetch_status() results; the last entry repeats
    - gate: optional threading.Event create() waits on before answering
    """

    def __init__(self):
        self.scripts: Dict[str, dict] = {}
        self.create_calls: List[JobRequest] = []
        self.fetch_calls: List[str] = []
        self._jobs: Dict[str, str] = {}

    def script(self, prompt, created, statuses=(), gate=None):
        self.scripts[prompt] = {"created": created, "statuses": list(statuses), "gate": gate}

    def create(self, request):
        self.create_calls.append(request)
        job_id = f"job-{len(self.create_calls)}"
        script = self.scripts[request.prompt]
        if script["gate"] is not None:
            script["gate"].wait(timeout=5)
        if isinstance(script["created"], Exception):
            raise script["created"]
        self._jobs[job_id] = request.prompt
        return job_id, script["created"]

    def fetch_status(self, job_id):
        self.fetch_calls.append(job_id)
        statuses = self.scripts[self._jobs[job_id]]["statuses"]
        item = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def make_request():
    def _make(prompt="a red fox in the snow", **settings) -> JobRequest:
        return JobRequest(prompt=prompt, settings=GenerationSettings(**settings))
    return _make


@pytest.fixture
def happy_path():
    return Queued(), [Processing(), Succeeded(outputs=("https://x/a.jpg",))]


@pytest.fixture
def gate() -> threading.Event:
    return threading.Event()
