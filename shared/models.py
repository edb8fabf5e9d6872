"""Shared data models for the note push sync application."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class ContentType(str, Enum):
    """Content types the backend can deliver."""
    TEXT = "text"
    SECRET_TEXT = "secretText"
    IMAGE = "image"
    SECRET_IMAGE = "secretImage"
    LINK = "link"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing 'Z'."""
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def to_epoch_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are local time)."""
    return int(value.timestamp() * 1000)


@dataclass
class SyncConfig:
    """User settings supplied by the host; read-only during a sync pass."""
    token: str = ""
    sync_interval: int = 3600
    notebook_id: str = ""
    notebook_name: str = ""
    document_id: str = ""
    document_name: str = ""
    sync_on_load: bool = True
    salt_value: str = ""
    timezone: Optional[str] = None

    @property
    def has_token(self) -> bool:
        return bool(self.token and self.token.strip())

    @property
    def has_target(self) -> bool:
        return bool(self.notebook_id and self.document_id)


@dataclass(frozen=True)
class NoteRecord:
    """A captured content record pending synchronization."""
    id: str
    created_at: datetime
    content: str
    content_type: ContentType

    @property
    def timestamp_ms(self) -> int:
        return to_epoch_ms(self.created_at)

    @classmethod
    def from_api(cls, data: dict) -> "NoteRecord":
        """
        Build a record from the backend payload.

        Raises:
            ValueError: If the content type is unknown or the timestamp is invalid
            KeyError: If a required field is missing
        """
        return cls(
            id=str(data["id"]),
            created_at=parse_timestamp(data["createdAt"]),
            content=data.get("content") or "",
            content_type=ContentType(data["contentType"]),
        )


@dataclass(frozen=True)
class DecryptionContext:
    """Key material sliced from the shared salt."""
    iv: str
    key_material: str


@dataclass
class DecryptedImage:
    """Image bytes recovered from an encrypted envelope."""
    data: bytes
    extension: str


@dataclass
class ImageContent:
    """Binary content downloaded from the backend or a remote host."""
    filename: str
    data: bytes


@dataclass
class LinkContent:
    """Rendered snapshot of a captured web link."""
    title: str
    content: str


@dataclass
class Quota:
    """Account quota information returned by the backend."""
    user_id: str
    paid_expires_at: Optional[datetime]
    note_used: int
    note_limit: Optional[int]
    link_used: int
    link_limit: Optional[int]

    @property
    def is_paid(self) -> bool:
        if not self.paid_expires_at:
            return False
        now = datetime.now(self.paid_expires_at.tzinfo)
        return self.paid_expires_at > now


@dataclass
class SyncCursor:
    """Timestamp (epoch ms) of the record that opened the current heading."""
    last_written_timestamp: int = 0


@dataclass
class RenderedFragment:
    """Markdown produced for one record, ready to append to the document."""
    record_id: str
    timestamp_ms: int
    body: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of a single sync pass."""
    pass_id: Optional[str]
    status: str  # completed, nothing_to_sync, skipped, aborted
    state: str
    written_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    acknowledged: bool = False
    message: str = ""
