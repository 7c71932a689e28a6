"""
Record stores for sticky notes.

``CloudKitRecordStore`` talks to the CloudKit Web Services private database.
``LocalRecordStore`` keeps the same records in a JSON file and is used when no
cloud account is configured.

Both are blocking; callers run them through a task runner so the UI thread
never waits on the network or the disk.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from note_record import RECORD_TYPE, CKRecord, RawRecord

LOGGER = logging.getLogger(__name__)


# ------------------------------- Errors --------------------------------------


class StoreError(Exception):
    """Base record store error."""


class StoreAuthError(StoreError):
    """Missing or expired tokens (401/403, AUTHENTICATION_REQUIRED)."""


class StoreRateLimited(StoreError):
    """429 Too Many Requests / THROTTLED."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class StoreApiError(StoreError):
    """Catch-all API error."""

    def __init__(self, message: str, payload: Optional[object] = None):
        super().__init__(message)
        self.payload = payload


_AUTH_CODES = {"AUTHENTICATION_FAILED", "AUTHENTICATION_REQUIRED", "NOT_AUTHENTICATED"}
_THROTTLE_CODES = {"THROTTLED", "REQUEST_RATE_LIMITED"}


def _error_for_item(item: Dict[str, Any]) -> StoreError:
    code = item.get("serverErrorCode", "UNKNOWN")
    reason = item.get("reason") or code
    name = item.get("recordName", "?")
    message = f"{code} on record {name}: {reason}"
    if code in _AUTH_CODES:
        return StoreAuthError(message)
    if code in _THROTTLE_CODES:
        return StoreRateLimited(message, retry_after=item.get("retryAfter"))
    return StoreApiError(message, payload=item)


# ------------------------------ Interface ------------------------------------


class RecordStore:
    """
    What the notes manager needs from a private database.

      - query_all(): every StickyNote record, raw
      - save(record): create-or-overwrite
      - delete(note_id)
    All three raise StoreError on failure.
    """

    def query_all(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def save(self, record: RawRecord) -> None:
        raise NotImplementedError

    def delete(self, note_id: str) -> None:
        raise NotImplementedError


# ------------------------------- CloudKit ------------------------------------


class CloudKitRecordStore(RecordStore):
    """
    CloudKit Web Services client for one container's private database.

    Endpoints used:
      - POST /records/query   (paged through continuationMarker)
      - POST /records/modify  (forceReplace / forceDelete)
    """

    def __init__(
        self,
        *,
        container: str,
        api_token: str,
        web_auth_token: Optional[str] = None,
        environment: str = "development",
        zone_name: str = "_defaultZone",
        base_url: str = "https://api.apple-cloudkit.com",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = (
            f"{base_url.rstrip('/')}/database/1/{container}/{environment}/private"
        )
        self._params: Dict[str, str] = {"ckAPIToken": api_token}
        if web_auth_token:
            self._params["ckWebAuthToken"] = web_auth_token
        self._zone_name = zone_name
        self._timeout = timeout
        self._session = session or requests.Session()
        LOGGER.debug("Initialized CloudKitRecordStore with base_url: %s", self._base_url)

    def _build_url(self, path: str) -> str:
        return f"{self._base_url}{path}?{urlencode(self._params)}"

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._build_url(path)
        LOGGER.info("POST to %s%s", self._base_url, path)
        try:
            resp = self._session.post(url, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            LOGGER.error("POST to %s failed: %s", path, e)
            raise StoreApiError(f"Network error: {e}") from e

        code = resp.status_code
        LOGGER.debug("POST to %s returned status %d", path, code)
        if code >= 400:
            if code in (401, 403):
                LOGGER.error("POST to %s failed with auth error: %d", path, code)
                raise StoreAuthError(f"HTTP {code}: unauthorized")
            if code == 429:
                retry_after = None
                hdr = resp.headers.get("Retry-After")
                if hdr:
                    try:
                        retry_after = float(hdr)
                    except ValueError:
                        retry_after = None
                LOGGER.warning("POST to %s was rate-limited. Retry after: %s", path, retry_after)
                raise StoreRateLimited("HTTP 429: rate limited", retry_after=retry_after)
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            LOGGER.error("POST to %s failed with code %d", path, code)
            raise StoreApiError(f"HTTP {code}", payload=body)

        try:
            return resp.json()
        except ValueError:
            LOGGER.error("Failed to parse JSON response from %s", path)
            raise StoreApiError("Invalid JSON response", payload=resp.text)

    # ----- Query -----

    def query_all(self) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        marker: Optional[str] = None
        page_num = 1
        while True:
            payload: Dict[str, Any] = {
                "query": {"recordType": RECORD_TYPE},
                "zoneID": {"zoneName": self._zone_name},
            }
            if marker:
                payload["continuationMarker"] = marker
            data = self._post("/records/query", payload)
            page = data.get("records", [])
            LOGGER.info("Query page %d returned %d records.", page_num, len(page))
            for item in page:
                # A failed lookup inside an otherwise good page is one note's
                # problem; the codec drops it.
                if isinstance(item, dict) and "serverErrorCode" in item:
                    LOGGER.warning("Skipping record error in query: %s", item.get("serverErrorCode"))
                    continue
                records.append(item)

            marker = data.get("continuationMarker")
            if not marker:
                return records
            LOGGER.debug("More records to come, following continuation marker.")
            page_num += 1

    # ----- Modify -----

    def _modify(self, operation: Dict[str, Any]) -> None:
        payload = {
            "operations": [operation],
            "zoneID": {"zoneName": self._zone_name},
            "atomic": False,
        }
        data = self._post("/records/modify", payload)
        for item in data.get("records", []):
            if isinstance(item, dict) and "serverErrorCode" in item:
                err = _error_for_item(item)
                LOGGER.error("Modify failed: %s", err)
                raise err

    def save(self, record: RawRecord) -> None:
        rec = CKRecord.model_validate(record)
        LOGGER.info("Saving record %s", rec.recordName)
        wire = rec.to_wire()
        # forceReplace overwrites regardless of the server change tag.
        wire.pop("recordChangeTag", None)
        self._modify({"operationType": "forceReplace", "record": wire})

    def delete(self, note_id: str) -> None:
        LOGGER.info("Deleting record %s", note_id)
        self._modify(
            {
                "operationType": "forceDelete",
                "record": {"recordName": note_id, "recordType": RECORD_TYPE},
            }
        )


# -------------------------------- Local --------------------------------------


class LocalRecordStore(RecordStore):
    """
    Records kept in a JSON file, keyed by record name.

    Every read-modify-write holds the store lock, and each write goes through
    its own temp file before replacing notes.json.
    """

    def __init__(self, notes_file: Path):
        self.notes_file = Path(notes_file)
        self.lock = threading.Lock()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.notes_file.exists():
            return {}
        try:
            with open(self.notes_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            LOGGER.warning("Notes file %s is not valid JSON; treating as empty", self.notes_file)
            return {}
        except OSError as e:
            raise StoreApiError(f"Cannot read {self.notes_file}: {e}") from e
        if not isinstance(data, dict):
            LOGGER.warning("Notes file %s has unexpected shape; treating as empty", self.notes_file)
            return {}
        return data

    def _dump(self, records: Dict[str, Dict[str, Any]]) -> None:
        tmp = None
        try:
            self.notes_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=self.notes_file.parent, prefix=self.notes_file.name, suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp, self.notes_file)
        except OSError as e:
            if tmp is not None and os.path.exists(tmp):
                os.remove(tmp)
            raise StoreApiError(f"Cannot write {self.notes_file}: {e}") from e

    def query_all(self) -> List[Dict[str, Any]]:
        with self.lock:
            records = list(self._load().values())
        LOGGER.info("Loaded %d records from %s", len(records), self.notes_file)
        return records

    def save(self, record: RawRecord) -> None:
        rec = CKRecord.model_validate(record)
        with self.lock:
            records = self._load()
            records[rec.recordName] = rec.to_wire()
            self._dump(records)

    def delete(self, note_id: str) -> None:
        with self.lock:
            records = self._load()
            if records.pop(note_id, None) is None:
                LOGGER.debug("Delete of unknown record %s", note_id)
            self._dump(records)


__all__ = [
    "CloudKitRecordStore",
    "LocalRecordStore",
    "RecordStore",
    "StoreApiError",
    "StoreAuthError",
    "StoreError",
    "StoreRateLimited",
]
