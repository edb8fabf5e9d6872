"""Unit tests for Sync Service.

Tests cover:
- Validation of token and target document
- Mixed batches where one record degrades to a placeholder
- Per-record failure isolation and the exact acknowledge set
- Empty batches, fetch failures and acknowledgment failures
- Re-delivered records that were written but never acknowledged
- The busy guard against overlapping passes
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock
from uuid import UUID

from shared.db_operations import DatabaseOperations
from shared.encryption import XorRecordCipher, derive_context
from shared.exceptions import AuthError, NetworkError
from shared.models import ContentType, ImageContent, NoteRecord, RenderedFragment, SyncConfig

from services.content_transformer.transformer import ContentTransformer
from services.document_writer.writer import DocumentWriter
from services.sync_service.notifications import NotificationService
from services.sync_service.orchestrator import (
    MISSING_TARGET_MESSAGE, MISSING_TOKEN_MESSAGE, SyncOrchestrator, SyncState
)

SALT = "0123456789abcdef" + "fedcba9876543210fedcba9876543210"
WRONG_SALT = "aaaaaaaaaaaaaaaa" + "bbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
START = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


# Test fixtures

@pytest.fixture
def db_ops():
    """In-memory database."""
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def config():
    return SyncConfig(
        token="tok",
        notebook_id="nb",
        document_id="doc",
        salt_value=SALT,
        timezone="UTC",
    )


@pytest.fixture
def mock_backend():
    """Mock Note Push backend client."""
    backend = Mock()
    backend.list_pending_records = AsyncMock(return_value=[])
    backend.acknowledge = AsyncMock()
    backend.fetch_image_content = AsyncMock(
        return_value=ImageContent(filename="photo.jpg", data=b"jpeg-bytes")
    )
    backend.fetch_link_content = AsyncMock()
    backend.fetch_remote_asset = AsyncMock()
    return backend


@pytest.fixture
def mock_assets():
    assets = Mock()
    assets.upload = AsyncMock(side_effect=lambda filename, data: f"assets/{filename}")
    return assets


@pytest.fixture
def mock_document_store():
    """Mock SiYuan document store that records appended blocks."""
    store = Mock()
    store.blocks = []

    async def append_block(document_id, markdown):
        store.blocks.append(markdown)
        return f"block-{len(store.blocks)}"

    store.append_block = AsyncMock(side_effect=append_block)
    store.create_document = AsyncMock(return_value="sub-doc")
    store.resolve_path_by_id = AsyncMock(return_value="/Inbox")
    return store


@pytest.fixture
def notification_service():
    return NotificationService(enabled=False)


@pytest.fixture
def orchestrator(mock_backend, mock_assets, mock_document_store, db_ops, config, notification_service):
    """Create SyncOrchestrator with a real transformer and writer over mocked stores."""
    return SyncOrchestrator(
        backend=mock_backend,
        transformer=ContentTransformer(mock_backend, mock_assets, mock_document_store),
        writer=DocumentWriter(mock_document_store, db_ops),
        db_ops=db_ops,
        config_provider=lambda: config,
        notification_service=notification_service
    )


def make_record(record_id, content_type, content="", offset_seconds=0):
    return NoteRecord(
        id=record_id,
        created_at=START + timedelta(seconds=offset_seconds),
        content=content,
        content_type=content_type,
    )


def acknowledged_ids(mock_backend):
    mock_backend.acknowledge.assert_awaited_once()
    return mock_backend.acknowledge.call_args.args[0]


# Test: Validation

@pytest.mark.asyncio
async def test_missing_token_aborts_without_contacting_backend(orchestrator, mock_backend, config, notification_service):
    config.token = ""

    result = await orchestrator.run_sync()

    assert result.status == "aborted"
    assert result.message == MISSING_TOKEN_MESSAGE
    mock_backend.list_pending_records.assert_not_awaited()
    assert notification_service.recent()[-1]["message"] == MISSING_TOKEN_MESSAGE


@pytest.mark.asyncio
async def test_missing_document_aborts(orchestrator, mock_backend, config):
    config.document_id = ""

    result = await orchestrator.run_sync()

    assert result.message == MISSING_TARGET_MESSAGE
    mock_backend.list_pending_records.assert_not_awaited()


@pytest.mark.asyncio
async def test_silent_validation_failure_does_not_notify(orchestrator, config, notification_service):
    config.token = ""

    await orchestrator.run_sync(trigger="load", notify=False)

    assert notification_service.recent() == []


@pytest.mark.asyncio
async def test_invalid_salt_does_not_abort(orchestrator, mock_backend, config):
    config.salt_value = "too-short"
    mock_backend.list_pending_records.return_value = [make_record("1", ContentType.TEXT, "hello")]

    result = await orchestrator.run_sync()

    assert result.status == "completed"
    assert result.written_ids == ["1"]


# Test: Mixed batch

@pytest.mark.asyncio
async def test_text_image_and_wrong_salt_secret_text(orchestrator, mock_backend, mock_document_store, db_ops):
    ciphertext = XorRecordCipher().encrypt_text("hidden", derive_context(WRONG_SALT))
    mock_backend.list_pending_records.return_value = [
        make_record("1", ContentType.TEXT, "plain note"),
        make_record("2", ContentType.IMAGE, "/files/photo", offset_seconds=5),
        make_record("3", ContentType.SECRET_TEXT, ciphertext, offset_seconds=10),
    ]

    result = await orchestrator.run_sync()

    assert result.status == "completed"
    assert result.written_ids == ["1", "2", "3"]
    assert result.failed_ids == []
    assert result.acknowledged is True
    assert acknowledged_ids(mock_backend) == ["1", "2", "3"]

    blocks = mock_document_store.blocks
    assert blocks[0] == "## 2024-05-01 09:30"
    assert blocks[1] == "plain note"
    assert blocks[2] == "![image](assets/photo.jpg)"
    assert blocks[3].startswith(ciphertext)
    assert "> Warning:" in blocks[3]
    assert "hidden" not in blocks[3]

    assert db_ops.get_written_ids() == []
    assert db_ops.get_cursor().last_written_timestamp == int(START.timestamp() * 1000)


@pytest.mark.asyncio
async def test_decrypt_warning_is_notified(orchestrator, mock_backend, notification_service):
    ciphertext = XorRecordCipher().encrypt_text("hidden", derive_context(WRONG_SALT))
    mock_backend.list_pending_records.return_value = [make_record("3", ContentType.SECRET_TEXT, ciphertext)]

    await orchestrator.run_sync()

    levels = [m["level"] for m in notification_service.recent()]
    assert "warning" in levels


# Test: Failure isolation

@pytest.mark.asyncio
async def test_failed_write_is_excluded_from_acknowledge(orchestrator, mock_backend, mock_document_store, db_ops):
    mock_backend.list_pending_records.return_value = [
        make_record("1", ContentType.TEXT, "first"),
        make_record("2", ContentType.TEXT, "second", offset_seconds=1),
        make_record("3", ContentType.TEXT, "third", offset_seconds=2),
    ]

    original = mock_document_store.append_block.side_effect

    async def append_block(document_id, markdown):
        if markdown == "second":
            raise RuntimeError("kernel crashed")
        return await original(document_id, markdown)

    mock_document_store.append_block.side_effect = append_block

    result = await orchestrator.run_sync()

    assert result.status == "completed"
    assert result.written_ids == ["1", "3"]
    assert result.failed_ids == ["2"]
    assert acknowledged_ids(mock_backend) == ["1", "3"]
    assert "third" in mock_document_store.blocks

    sync_pass = db_ops.get_sync_pass(UUID(result.pass_id))
    assert sync_pass.written_records == 2
    assert sync_pass.failed_records == 1


@pytest.mark.asyncio
async def test_auth_error_mid_batch_stops_and_acknowledges_written(orchestrator, mock_backend):
    mock_backend.list_pending_records.return_value = [
        make_record("1", ContentType.TEXT, "first"),
        make_record("2", ContentType.IMAGE, "/files/photo", offset_seconds=1),
        make_record("3", ContentType.TEXT, "third", offset_seconds=2),
    ]
    mock_backend.fetch_image_content.side_effect = AuthError("Token validation failed, please reconfigure the token")

    result = await orchestrator.run_sync()

    assert result.status == "aborted"
    assert result.state == SyncState.ABORTED.value
    assert result.written_ids == ["1"]
    assert result.failed_ids == ["2"]
    assert acknowledged_ids(mock_backend) == ["1"]


# Test: Empty and failing fetch

@pytest.mark.asyncio
async def test_empty_list_is_nothing_to_sync(orchestrator, mock_backend, mock_document_store):
    result = await orchestrator.run_sync()

    assert result.status == "nothing_to_sync"
    assert orchestrator.state == SyncState.IDLE
    mock_backend.acknowledge.assert_not_awaited()
    mock_document_store.append_block.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetch_failure_aborts(orchestrator, mock_backend, db_ops, notification_service):
    mock_backend.list_pending_records.side_effect = NetworkError("Server busy, please try again later")

    result = await orchestrator.run_sync()

    assert result.status == "aborted"
    assert orchestrator.state == SyncState.ABORTED
    assert db_ops.get_latest_sync_pass().error_message == "Server busy, please try again later"
    assert notification_service.recent()[-1]["level"] == "error"
    mock_backend.acknowledge.assert_not_awaited()


# Test: Acknowledgment failure and re-delivery

@pytest.mark.asyncio
async def test_ack_failure_keeps_ids_and_skips_rewrite_next_pass(orchestrator, mock_backend, mock_document_store, db_ops):
    records = [
        make_record("1", ContentType.TEXT, "first"),
        make_record("2", ContentType.TEXT, "second", offset_seconds=1),
    ]
    mock_backend.list_pending_records.return_value = records
    mock_backend.acknowledge.side_effect = NetworkError("Server busy, please try again later")

    first = await orchestrator.run_sync()

    assert first.status == "completed"
    assert first.acknowledged is False
    assert sorted(db_ops.get_written_ids()) == ["1", "2"]
    blocks_after_first = list(mock_document_store.blocks)

    mock_backend.acknowledge.side_effect = None
    mock_backend.acknowledge.reset_mock()
    mock_backend.list_pending_records.return_value = records + [
        make_record("3", ContentType.TEXT, "third", offset_seconds=2)
    ]

    second = await orchestrator.run_sync()

    assert second.acknowledged is True
    assert acknowledged_ids(mock_backend) == ["1", "2", "3"]
    assert mock_document_store.blocks == blocks_after_first + ["third"]
    assert db_ops.get_written_ids() == []


# Test: Busy guard

@pytest.mark.asyncio
async def test_overlapping_request_is_skipped(orchestrator, mock_backend):
    release = asyncio.Event()

    async def slow_fetch():
        await release.wait()
        return []

    mock_backend.list_pending_records.side_effect = slow_fetch

    first = asyncio.create_task(orchestrator.run_sync(trigger="manual"))
    await asyncio.sleep(0)
    assert orchestrator.busy

    second = await orchestrator.run_sync(trigger="timer")
    release.set()
    first_result = await first

    assert second.status == "skipped"
    assert first_result.status == "nothing_to_sync"
    assert mock_backend.list_pending_records.await_count == 1
    assert not orchestrator.busy


@pytest.mark.asyncio
async def test_config_snapshot_taken_per_pass(mock_backend, db_ops):
    configs = [
        SyncConfig(token="tok", notebook_id="nb", document_id="doc-a", timezone="UTC"),
        SyncConfig(token="tok", notebook_id="nb", document_id="doc-b", timezone="UTC"),
    ]
    writer = Mock()
    writer.write_fragment = AsyncMock(side_effect=lambda fragment, cursor, document_id, tz: cursor)
    transformer = Mock()
    transformer.transform = AsyncMock(
        side_effect=lambda record, config, context: RenderedFragment(record.id, record.timestamp_ms, "x")
    )
    orchestrator = SyncOrchestrator(
        backend=mock_backend,
        transformer=transformer,
        writer=writer,
        db_ops=db_ops,
        config_provider=Mock(side_effect=configs),
        notification_service=NotificationService(enabled=False)
    )
    mock_backend.list_pending_records.return_value = [make_record("1", ContentType.TEXT, "x")]

    await orchestrator.run_sync()
    await orchestrator.run_sync()

    targets = [c.args[2] for c in writer.write_fragment.call_args_list]
    assert targets == ["doc-a", "doc-b"]


# Test: Interrupted passes

@pytest.mark.asyncio
async def test_cancelled_pass_closes_row(orchestrator, mock_backend, db_ops):
    async def blocked_fetch():
        await asyncio.Event().wait()

    mock_backend.list_pending_records.side_effect = blocked_fetch

    task = asyncio.create_task(orchestrator.run_sync(trigger="timer"))
    await asyncio.sleep(0)
    assert orchestrator.state == SyncState.FETCHING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.state == SyncState.ABORTED
    assert not orchestrator.busy
    sync_pass = db_ops.get_latest_sync_pass()
    assert sync_pass.status == "aborted"
    assert sync_pass.error_message == "Sync cancelled"
    assert sync_pass.completed_at is not None


@pytest.mark.asyncio
async def test_unexpected_error_closes_row(orchestrator, mock_backend, db_ops):
    mock_backend.list_pending_records.return_value = [make_record("1", ContentType.TEXT, "first")]
    mock_backend.acknowledge.side_effect = RuntimeError("connection pool exhausted")

    with pytest.raises(RuntimeError):
        await orchestrator.run_sync()

    assert orchestrator.state == SyncState.ABORTED
    assert not orchestrator.busy
    sync_pass = db_ops.get_latest_sync_pass()
    assert sync_pass.status == "aborted"
    assert sync_pass.error_message == "Sync failed: connection pool exhausted"


@pytest.mark.asyncio
async def test_bookkeeping_failure_still_acknowledges(orchestrator, mock_backend, mock_document_store, db_ops):
    mock_backend.list_pending_records.return_value = [
        make_record("1", ContentType.TEXT, "first"),
        make_record("2", ContentType.TEXT, "second", offset_seconds=1),
    ]
    db_ops.mark_written = Mock(side_effect=RuntimeError("database is locked"))

    result = await orchestrator.run_sync()

    assert result.status == "completed"
    assert result.written_ids == ["1", "2"]
    assert acknowledged_ids(mock_backend) == ["1", "2"]
    assert mock_document_store.blocks[-1] == "second"
    assert orchestrator.state == SyncState.IDLE


# Test: Written-set housekeeping

@pytest.mark.asyncio
async def test_written_ids_no_longer_pending_are_forgotten(orchestrator, mock_backend, mock_document_store, db_ops):
    db_ops.mark_written("consumed-elsewhere")
    db_ops.mark_written("1")
    mock_backend.list_pending_records.return_value = [make_record("1", ContentType.TEXT, "first")]
    mock_backend.acknowledge.side_effect = NetworkError("Server busy, please try again later")

    await orchestrator.run_sync()

    assert db_ops.get_written_ids() == ["1"]
    mock_document_store.append_block.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_list_forgets_written_ids(orchestrator, db_ops):
    db_ops.mark_written("consumed-elsewhere")

    result = await orchestrator.run_sync()

    assert result.status == "nothing_to_sync"
    assert db_ops.get_written_ids() == []
