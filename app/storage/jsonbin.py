# storage/jsonbin.py
from __future__ import annotations
import requests
from typing import Any, Dict, List, Optional

class JsonBin:
    """
    Saved prompts / gallery.
    - One bin stores a dict of {item_id: payload}
    - For a personal gallery, read-modify-write is fine.
    """

    def __init__(self, api_key: str, saved_bin_id: str, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.saved_bin_id = saved_bin_id
        self.base = "https://api.jsonbin.io/v3"
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {"X-Master-Key": self.api_key, "Content-Type": "application/json"}

    def _read_bin_record(self, bin_id: str) -> Dict[str, Any]:
        r = self.session.get(f"{self.base}/b/{bin_id}/latest", headers=self._headers(), timeout=30)
        r.raise_for_status()
        rec = r.json().get("record")
        return rec if isinstance(rec, dict) else {}

    def _write_bin_record(self, bin_id: str, record: Dict[str, Any]) -> None:
        r = self.session.put(f"{self.base}/b/{bin_id}", headers=self._headers(), json=record, timeout=30)
        r.raise_for_status()

    # Saved items
    def put_saved(self, item_id: str, payload: Dict[str, Any]) -> None:
        record = self._read_bin_record(self.saved_bin_id)
        record[item_id] = payload
        self._write_bin_record(self.saved_bin_id, record)

    def get_saved(self, item_id: str) -> Optional[Dict[str, Any]]:
        v = self._read_bin_record(self.saved_bin_id).get(item_id)
        return v if isinstance(v, dict) else None

    def list_saved(self) -> List[Dict[str, Any]]:
        record = self._read_bin_record(self.saved_bin_id)
        items = [v for v in record.values() if isinstance(v, dict)]
        # newest first; ISO timestamps sort lexically
        return sorted(items, key=lambda v: v.get("created_at") or "", reverse=True)

    def delete_saved(self, item_id: str) -> bool:
        record = self._read_bin_record(self.saved_bin_id)
        if item_id not in record:
            return False
        del record[item_id]
        self._write_bin_record(self.saved_bin_id, record)
        return True
