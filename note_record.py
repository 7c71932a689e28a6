"""
Sticky note value type and its CloudKit record codec.

A note travels to the private database as a ``StickyNote`` record:

    {
      "recordName": "<note id>",
      "recordType": "StickyNote",
      "fields": {
        "content":      {"value": "...", "type": "STRING"},
        "lastModified": {"value": 1715790000123, "type": "TIMESTAMP"}
      }
    }
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

RECORD_TYPE = "StickyNote"
CONTENT_FIELD = "content"
MODIFIED_FIELD = "lastModified"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _to_stored_precision(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=dt.microsecond // 1000 * 1000)


def now_utc() -> datetime:
    """Current UTC time truncated to the millisecond precision CloudKit stores."""
    return _to_stored_precision(datetime.now(timezone.utc))


def to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // _ONE_MS


def from_millis(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


# ------------------------------- Domain --------------------------------------


@dataclass(frozen=True)
class Note:
    """One sticky note. Edits produce a new value with the same identity."""

    note_id: str
    content: str
    last_modified: datetime

    def __post_init__(self):
        # Stored as UTC milliseconds, so keep nothing finer than that.
        object.__setattr__(self, "last_modified", _to_stored_precision(self.last_modified))

    @classmethod
    def new(cls, content: str = "") -> "Note":
        return cls(note_id=str(uuid.uuid4()), content=content, last_modified=now_utc())

    def edited(self, content: str) -> "Note":
        return replace(self, content=content, last_modified=now_utc())


# ------------------------------ Wire models ----------------------------------


class CKModel(BaseModel):
    # The server adds created/modified audit info and change tags we don't use.
    model_config = ConfigDict(extra="ignore")


class CKField(CKModel):
    value: Any = None
    type: Optional[str] = None


class CKRecord(CKModel):
    recordName: str
    recordType: str
    fields: Dict[str, CKField] = Field(default_factory=dict)
    recordChangeTag: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


RawRecord = Union[Mapping[str, Any], CKRecord]


# -------------------------------- Codec --------------------------------------


def encode(note: Note) -> CKRecord:
    return CKRecord(
        recordName=note.note_id,
        recordType=RECORD_TYPE,
        fields={
            CONTENT_FIELD: CKField(value=note.content, type="STRING"),
            MODIFIED_FIELD: CKField(value=to_millis(note.last_modified), type="TIMESTAMP"),
        },
    )


def decode(record: RawRecord) -> Optional[Note]:
    """
    Build a Note from a raw record, or return None when the record is not a
    usable StickyNote (missing or mistyped ``content`` / ``lastModified``).
    Never raises.
    """
    try:
        rec = CKRecord.model_validate(record)
    except ValidationError:
        return None

    if rec.recordType != RECORD_TYPE:
        return None

    content = rec.fields.get(CONTENT_FIELD)
    modified = rec.fields.get(MODIFIED_FIELD)
    if content is None or modified is None:
        return None
    if not isinstance(content.value, str):
        return None
    # bool is an int subclass
    if isinstance(modified.value, bool) or not isinstance(modified.value, int):
        return None

    try:
        last_modified = from_millis(modified.value)
    except OverflowError:
        LOGGER.debug("Timestamp out of range on record %s", rec.recordName)
        return None

    return Note(note_id=rec.recordName, content=content.value, last_modified=last_modified)


__all__ = [
    "CKField",
    "CKRecord",
    "Note",
    "RECORD_TYPE",
    "decode",
    "encode",
    "from_millis",
    "now_utc",
    "to_millis",
]
