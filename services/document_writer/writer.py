"""Document Writer - appends rendered fragments under time-bucketed headings."""

import logging
from datetime import datetime
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from shared.models import RenderedFragment, SyncCursor

from services.document_writer.store import DocumentStore

logger = logging.getLogger(__name__)

# Records further apart than this open a new heading
HEADING_GAP_MS = 300 * 1000
HEADING_FORMAT = "%Y-%m-%d %H:%M"


class CursorStore(Protocol):
    def save_cursor(self, cursor: SyncCursor) -> None:
        ...


def format_heading(timestamp_ms: int, tz: Optional[str] = None) -> str:
    """
    Render the heading text for a record timestamp.

    Args:
        timestamp_ms: Record creation time in epoch milliseconds
        tz: IANA timezone name; the machine's local time when None

    Returns:
        Markdown heading, e.g. '## 2024-05-01 09:30'
    """
    zone = ZoneInfo(tz) if tz else None
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=zone)
    return f"## {moment.strftime(HEADING_FORMAT)}"


def needs_heading(cursor: SyncCursor, timestamp_ms: int) -> bool:
    if cursor.last_written_timestamp == 0:
        return True
    return timestamp_ms - cursor.last_written_timestamp > HEADING_GAP_MS


class DocumentWriter:
    """Appends fragments to the target document in processing order."""

    def __init__(self, store: DocumentStore, cursor_store: CursorStore):
        """
        Initialize the writer.

        Args:
            store: Document store receiving the blocks
            cursor_store: Persistence for the heading cursor
        """
        self.store = store
        self.cursor_store = cursor_store

    async def write_fragment(
        self,
        fragment: RenderedFragment,
        cursor: SyncCursor,
        document_id: str,
        tz: Optional[str] = None
    ) -> SyncCursor:
        """
        Append one fragment, opening a new heading when the time gap requires it.

        The heading block is appended and the cursor persisted before the
        fragment body is appended.

        Args:
            fragment: Rendered record content
            cursor: Cursor as of the previous write
            document_id: Target document ID
            tz: Timezone used to format the heading

        Returns:
            The cursor to use for the next fragment

        Raises:
            DocumentStoreError: If an append fails
        """
        if needs_heading(cursor, fragment.timestamp_ms):
            heading = format_heading(fragment.timestamp_ms, tz)
            logger.info(f"Opening heading {heading!r} for record {fragment.record_id}")
            await self.store.append_block(document_id, heading)
            cursor = SyncCursor(last_written_timestamp=fragment.timestamp_ms)
            self.cursor_store.save_cursor(cursor)

        await self.store.append_block(document_id, fragment.body)
        logger.info(f"Wrote record {fragment.record_id} to document {document_id}")
        return cursor
