"""Database operations for the note push sync application."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from cryptography.fernet import InvalidToken
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from shared.config import get_database_url
from shared.db_models import Base, SyncLog, SyncPass, SyncStateEntry, WrittenRecord
from shared.models import SyncConfig, SyncCursor

if TYPE_CHECKING:
    from shared.encryption import EncryptionService

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_sync_cursor"
CONFIG_KEY = "sync_config"


class DatabaseOperations:
    """Handles all database operations for the sync application."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Key/Value State Operations

    def _get_value(self, key: str) -> Optional[str]:
        with self.get_session() as session:
            entry = session.get(SyncStateEntry, key)
            return entry.value if entry else None

    def _set_value(self, key: str, value: str) -> None:
        with self.get_session() as session:
            entry = session.get(SyncStateEntry, key)
            if entry:
                entry.value = value
                entry.updated_at = datetime.utcnow()
            else:
                session.add(SyncStateEntry(key=key, value=value))
            session.commit()

    def get_cursor(self) -> SyncCursor:
        """
        Load the heading cursor.

        Returns:
            The persisted SyncCursor, or a zero cursor if nothing was written yet
        """
        value = self._get_value(CURSOR_KEY)
        if value is None:
            return SyncCursor()
        try:
            return SyncCursor(last_written_timestamp=int(value))
        except ValueError:
            logger.warning(f"Ignoring malformed cursor value: {value!r}")
            return SyncCursor()

    def save_cursor(self, cursor: SyncCursor) -> None:
        """Persist the heading cursor."""
        self._set_value(CURSOR_KEY, str(cursor.last_written_timestamp))

    # Sync Configuration Operations

    def save_sync_config(
        self,
        config: SyncConfig,
        encryption_service: 'EncryptionService'
    ) -> None:
        """
        Store the sync settings, encrypting the token and salt.

        Args:
            config: Settings to persist
            encryption_service: Encryption service for the secret fields
        """
        data = asdict(config)
        data["token"] = encryption_service.encrypt(config.token)
        data["salt_value"] = encryption_service.encrypt(config.salt_value)
        self._set_value(CONFIG_KEY, json.dumps(data))

    def load_sync_config(
        self,
        encryption_service: 'EncryptionService'
    ) -> Optional[SyncConfig]:
        """
        Retrieve and decrypt the stored sync settings.

        Args:
            encryption_service: Encryption service for the secret fields

        Returns:
            SyncConfig, or None if nothing is stored or it cannot be decrypted
        """
        value = self._get_value(CONFIG_KEY)
        if value is None:
            return None

        try:
            data = json.loads(value)
            data["token"] = encryption_service.decrypt(data.get("token", ""))
            data["salt_value"] = encryption_service.decrypt(data.get("salt_value", ""))
        except InvalidToken:
            logger.error("Stored sync config was encrypted with a different key; ignoring it")
            return None
        except ValueError as e:
            logger.error(f"Stored sync config is not valid JSON: {e}")
            return None

        known = set(SyncConfig.__dataclass_fields__)
        return SyncConfig(**{k: v for k, v in data.items() if k in known})

    # Sync Pass Tracking Operations

    def create_sync_pass(self, pass_id: UUID, trigger: str) -> SyncPass:
        """
        Create a new sync pass record in 'running' status.

        Args:
            pass_id: Unique pass identifier
            trigger: What started the pass (manual, timer, load)

        Returns:
            The created SyncPass record
        """
        with self.get_session() as session:
            sync_pass = SyncPass(
                pass_id=pass_id,
                trigger=trigger,
                status='running',
                created_at=datetime.utcnow()
            )
            session.add(sync_pass)
            session.commit()
            session.refresh(sync_pass)
            return sync_pass

    def update_sync_pass(
        self,
        pass_id: UUID,
        status: Optional[str] = None,
        total_records: Optional[int] = None,
        written_records: Optional[int] = None,
        failed_records: Optional[int] = None,
        acknowledged: Optional[bool] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None
    ) -> Optional[SyncPass]:
        """
        Update a sync pass with progress information.

        Returns:
            The updated SyncPass record or None if not found
        """
        with self.get_session() as session:
            sync_pass = session.get(SyncPass, pass_id)
            if not sync_pass:
                return None

            if status is not None:
                sync_pass.status = status
            if total_records is not None:
                sync_pass.total_records = total_records
            if written_records is not None:
                sync_pass.written_records = written_records
            if failed_records is not None:
                sync_pass.failed_records = failed_records
            if acknowledged is not None:
                sync_pass.acknowledged = acknowledged
            if error_message is not None:
                sync_pass.error_message = error_message
            if completed_at is not None:
                sync_pass.completed_at = completed_at

            session.commit()
            session.refresh(sync_pass)
            return sync_pass

    def get_sync_pass(self, pass_id: UUID) -> Optional[SyncPass]:
        """Get a sync pass by ID."""
        with self.get_session() as session:
            return session.get(SyncPass, pass_id)

    def get_latest_sync_pass(self) -> Optional[SyncPass]:
        """Get the most recently started sync pass."""
        with self.get_session() as session:
            stmt = select(SyncPass).order_by(SyncPass.created_at.desc()).limit(1)
            return session.execute(stmt).scalar_one_or_none()

    # Sync Log Operations

    def add_sync_log(
        self,
        pass_id: UUID,
        level: str,
        message: str,
        record_id: Optional[str] = None
    ) -> SyncLog:
        """
        Add a log entry for a sync pass.

        Args:
            pass_id: The pass ID
            level: Log level (INFO, WARNING, ERROR)
            message: Log message
            record_id: Optional backend record ID related to this log
        """
        with self.get_session() as session:
            sync_log = SyncLog(
                pass_id=pass_id,
                level=level,
                message=message,
                record_id=record_id
            )
            session.add(sync_log)
            session.commit()
            session.refresh(sync_log)
            return sync_log

    def get_sync_logs(self, pass_id: UUID, limit: int = 100) -> List[SyncLog]:
        """Get log entries for a sync pass in insertion order."""
        with self.get_session() as session:
            stmt = select(SyncLog).where(
                SyncLog.pass_id == pass_id
            ).order_by(
                SyncLog.id.asc()
            ).limit(limit)
            return list(session.execute(stmt).scalars().all())

    # Written-but-unacknowledged Record Operations

    def mark_written(self, record_id: str, pass_id: Optional[UUID] = None) -> None:
        """Remember that a record reached the document before it is acknowledged."""
        with self.get_session() as session:
            if session.get(WrittenRecord, record_id) is None:
                session.add(WrittenRecord(record_id=record_id, pass_id=pass_id))
                session.commit()

    def get_written_ids(self) -> List[str]:
        """IDs written to the document whose acknowledgment has not succeeded."""
        with self.get_session() as session:
            stmt = select(WrittenRecord.record_id).order_by(WrittenRecord.written_at.asc())
            return list(session.execute(stmt).scalars().all())

    def clear_written(self, record_ids: List[str]) -> int:
        """
        Forget records once the backend acknowledged them.

        Returns:
            Number of rows removed
        """
        if not record_ids:
            return 0
        with self.get_session() as session:
            result = session.execute(
                delete(WrittenRecord).where(WrittenRecord.record_id.in_(record_ids))
            )
            session.commit()
            return result.rowcount
