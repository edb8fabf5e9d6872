"""SQLAlchemy database models for the note push sync application."""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, ForeignKey, Index, TypeDecorator
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36), storing as stringified hex values.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        if isinstance(value, str):
            return uuid.UUID(value)
        return value


Base = declarative_base()


class SyncPass(Base):
    """One execution of the fetch -> write -> acknowledge pipeline."""
    __tablename__ = 'sync_passes'

    pass_id = Column(UUID(), primary_key=True)
    trigger = Column(String(20), nullable=False)  # manual, timer, load
    status = Column(String(50), nullable=False)
    total_records = Column(Integer, default=0)
    written_records = Column(Integer, default=0)
    failed_records = Column(Integer, default=0)
    acknowledged = Column(Boolean, default=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_sync_passes_created', 'created_at'),
    )


class SyncStateEntry(Base):
    """Key/value persisted state: the heading cursor and the sync settings."""
    __tablename__ = 'sync_state'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class WrittenRecord(Base):
    """Record written to the document whose acknowledgment has not succeeded yet."""
    __tablename__ = 'written_records'

    record_id = Column(String(255), primary_key=True)
    pass_id = Column(UUID(), nullable=True)
    written_at = Column(DateTime, nullable=False, server_default=func.now())


class SyncLog(Base):
    """Model for sync_logs table."""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pass_id = Column(UUID(), ForeignKey('sync_passes.pass_id'), nullable=False)
    record_id = Column(String(255), nullable=True)
    level = Column(String(20), nullable=False)  # INFO, WARNING, ERROR
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_sync_logs_pass_id', 'pass_id'),
    )
