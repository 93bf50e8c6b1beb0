# worker/client.py
from __future__ import annotations
import logging
import requests
from pydantic import ValidationError as PydanticValidationError
from typing import Any, Dict, Optional, Tuple

from api.models import Failed, JobRequest, JobState, PredictionRecord, Processing, Queued, Succeeded
from worker.errors import NotFoundError, ServiceError, TransportError, ValidationError

logger = logging.getLogger(__name__)

QUEUED_STATUSES = {"queued", "starting"}

def record_to_state(record: PredictionRecord) -> JobState:
    status = record.status.lower()
    if status in QUEUED_STATUSES:
        return Queued()
    if status == "processing":
        return Processing()
    if status == "succeeded":
        return Succeeded(outputs=tuple(record.output or []))
    if status == "failed":
        return Failed(reason=record.error or "generation failed")
    if status == "canceled":
        return Failed(reason="canceled")
    raise ServiceError(f"Unknown prediction status {record.status!r}")

class JobClient:
    """
    Thin transport wrapper around the predictions service.
    - create(): POST /predictions, once per submission (not idempotent)
    - fetch_status(): GET /predictions/{id}, safe to repeat
    No retries and no polling here; that is the orchestrator's job.
    """

    def __init__(self, base_url: str, api_token: str = "", timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def create(self, request: JobRequest) -> Tuple[str, JobState]:
        body = {
            "prompt": request.prompt,
            "settings": request.settings.model_dump(by_alias=True),
        }
        r = self._send("POST", f"{self.base}/predictions", json=body)
        if r.status_code in (400, 422):
            raise ValidationError(_error_message(r))
        record = _parse_record(r)
        logger.debug("Created prediction %s (%s)", record.id, record.status)
        return record.id, record_to_state(record)

    def fetch_status(self, job_id: str) -> JobState:
        r = self._send("GET", f"{self.base}/predictions/{job_id}")
        if r.status_code == 404:
            raise NotFoundError(f"Prediction {job_id} not found", status_code=404)
        return record_to_state(_parse_record(r))

def _json_or_none(r: requests.Response) -> Optional[Dict[str, Any]]:
    try:
        data = r.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None

def _error_message(r: requests.Response) -> str:
    data = _json_or_none(r) or {}
    msg = data.get("error") or data.get("detail")
    if isinstance(msg, str) and msg.strip():
        return msg.strip()
    return f"HTTP {r.status_code} {r.reason or ''}".strip()

def _parse_record(r: requests.Response) -> PredictionRecord:
    if not r.ok:
        raise ServiceError(_error_message(r), status_code=r.status_code)
    data = _json_or_none(r)
    if data is None:
        raise ServiceError("Prediction response is not a JSON object", status_code=r.status_code)
    try:
        return PredictionRecord.model_validate(data)
    except PydanticValidationError as e:
        raise ServiceError(f"Malformed prediction record: {e.error_count()} error(s)",
                           status_code=r.status_code) from e
