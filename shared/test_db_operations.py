"""Tests for database operations."""

import pytest
from datetime import datetime
from uuid import uuid4

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import SyncConfig, SyncCursor


@pytest.fixture
def db_ops():
    """Create a test database operations instance with in-memory SQLite."""
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    """Create an encryption service for testing."""
    return EncryptionService(EncryptionService.generate_key())


def test_cursor_defaults_to_zero(db_ops):
    assert db_ops.get_cursor() == SyncCursor(last_written_timestamp=0)


def test_save_and_load_cursor(db_ops):
    db_ops.save_cursor(SyncCursor(last_written_timestamp=1714555800000))
    assert db_ops.get_cursor().last_written_timestamp == 1714555800000

    db_ops.save_cursor(SyncCursor(last_written_timestamp=1714556100001))
    assert db_ops.get_cursor().last_written_timestamp == 1714556100001


def test_malformed_cursor_resets(db_ops):
    db_ops._set_value("last_sync_cursor", "not-a-number")
    assert db_ops.get_cursor().last_written_timestamp == 0


def test_sync_config_round_trip(db_ops, encryption_service):
    config = SyncConfig(
        token="token-123",
        sync_interval=600,
        notebook_id="nb",
        notebook_name="Inbox",
        document_id="doc",
        document_name="Captured",
        sync_on_load=False,
        salt_value="s" * 48,
        timezone="Asia/Shanghai",
    )

    db_ops.save_sync_config(config, encryption_service)
    loaded = db_ops.load_sync_config(encryption_service)

    assert loaded == config


def test_sync_config_secrets_encrypted_at_rest(db_ops, encryption_service):
    db_ops.save_sync_config(SyncConfig(token="token-123", salt_value="s" * 48), encryption_service)

    stored = db_ops._get_value("sync_config")

    assert "token-123" not in stored
    assert "s" * 48 not in stored


def test_sync_config_missing_returns_none(db_ops, encryption_service):
    assert db_ops.load_sync_config(encryption_service) is None


def test_sync_config_with_other_key_returns_none(db_ops, encryption_service):
    db_ops.save_sync_config(SyncConfig(token="token-123"), encryption_service)
    other = EncryptionService(EncryptionService.generate_key())
    assert db_ops.load_sync_config(other) is None


def test_create_and_update_sync_pass(db_ops):
    pass_id = uuid4()

    sync_pass = db_ops.create_sync_pass(pass_id, "manual")
    assert sync_pass.pass_id == pass_id
    assert sync_pass.status == "running"
    assert sync_pass.trigger == "manual"

    completed_at = datetime.utcnow()
    updated = db_ops.update_sync_pass(
        pass_id,
        status="completed",
        total_records=3,
        written_records=2,
        failed_records=1,
        acknowledged=True,
        completed_at=completed_at
    )

    assert updated.status == "completed"
    assert updated.total_records == 3
    assert updated.written_records == 2
    assert updated.failed_records == 1
    assert updated.acknowledged is True
    assert db_ops.get_sync_pass(pass_id).completed_at == completed_at


def test_update_missing_sync_pass_returns_none(db_ops):
    assert db_ops.update_sync_pass(uuid4(), status="completed") is None


def test_get_latest_sync_pass(db_ops):
    assert db_ops.get_latest_sync_pass() is None

    db_ops.create_sync_pass(uuid4(), "load")
    latest_id = uuid4()
    db_ops.create_sync_pass(latest_id, "timer")

    assert db_ops.get_latest_sync_pass().pass_id == latest_id


def test_sync_logs_in_order(db_ops):
    pass_id = uuid4()
    db_ops.create_sync_pass(pass_id, "manual")

    db_ops.add_sync_log(pass_id, "INFO", "Starting manual sync")
    db_ops.add_sync_log(pass_id, "ERROR", "Failed to write record", record_id="r2")

    logs = db_ops.get_sync_logs(pass_id)

    assert [log.message for log in logs] == ["Starting manual sync", "Failed to write record"]
    assert logs[1].record_id == "r2"
    assert logs[1].level == "ERROR"


def test_written_records_lifecycle(db_ops):
    pass_id = uuid4()
    db_ops.mark_written("r1", pass_id)
    db_ops.mark_written("r2", pass_id)
    db_ops.mark_written("r1", pass_id)

    assert sorted(db_ops.get_written_ids()) == ["r1", "r2"]

    assert db_ops.clear_written(["r1", "r2", "r3"]) == 2
    assert db_ops.get_written_ids() == []


def test_clear_written_empty_list(db_ops):
    assert db_ops.clear_written([]) == 0
