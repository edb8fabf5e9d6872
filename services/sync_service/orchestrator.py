"""Sync orchestration logic."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from uuid import UUID, uuid4

from shared.db_operations import DatabaseOperations
from shared.encryption import derive_context
from shared.exceptions import AuthError, InvalidSaltError, NetworkError, ServerError
from shared.models import DecryptionContext, NoteRecord, SyncConfig, SyncResult

from services.backend_client.client import BackendClient
from services.content_transformer.transformer import ContentTransformer
from services.document_writer.writer import DocumentWriter
from services.sync_service.notifications import NotificationService

logger = logging.getLogger(__name__)

MISSING_TOKEN_MESSAGE = "Please configure the token first"
MISSING_TARGET_MESSAGE = "Please select a notebook and document first"
NOTHING_TO_SYNC_MESSAGE = "All records are already synced"
BUSY_MESSAGE = "A sync is already in progress"


class SyncState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    FETCHING = "fetching"
    PROCESSING = "processing"
    ACKNOWLEDGING = "acknowledging"
    ABORTED = "aborted"


class SyncOrchestrator:
    """Runs the fetch -> transform -> write -> acknowledge pipeline, one pass at a time."""

    def __init__(
        self,
        backend: BackendClient,
        transformer: ContentTransformer,
        writer: DocumentWriter,
        db_ops: DatabaseOperations,
        config_provider: Callable[[], SyncConfig],
        notification_service: Optional[NotificationService] = None
    ):
        """
        Initialize the sync orchestrator.

        Args:
            backend: Note Push backend client
            transformer: Renders records into fragments
            writer: Appends fragments to the target document
            db_ops: Database operations instance
            config_provider: Returns the settings snapshot for a pass
            notification_service: Delivers user-facing messages
        """
        self.backend = backend
        self.transformer = transformer
        self.writer = writer
        self.db_ops = db_ops
        self.config_provider = config_provider
        self.notification_service = notification_service or NotificationService()
        self.state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._pass_id: Optional[UUID] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run_sync(self, trigger: str = "manual", notify: bool = True) -> SyncResult:
        """
        Execute one sync pass.

        A request arriving while a pass is in flight is ignored rather than queued.

        Args:
            trigger: What started the pass (manual, timer, load)
            notify: Whether to show the "not configured" and "nothing to sync" notices

        Returns:
            SyncResult describing what was written and acknowledged
        """
        if self._lock.locked():
            logger.info(f"Ignoring {trigger} sync request: {BUSY_MESSAGE.lower()}")
            return SyncResult(
                pass_id=None,
                status="skipped",
                state=self.state.value,
                message=BUSY_MESSAGE
            )

        async with self._lock:
            self._pass_id = None
            try:
                return await self._run_pass(trigger, notify)
            except asyncio.CancelledError:
                logger.warning(f"{trigger.capitalize()} sync cancelled")
                self._close_interrupted_pass("Sync cancelled")
                raise
            except Exception as e:
                logger.error(f"{trigger.capitalize()} sync failed: {e}", exc_info=True)
                self._close_interrupted_pass(f"Sync failed: {e}")
                raise
            finally:
                self._pass_id = None

    def _close_interrupted_pass(self, error_message: str) -> None:
        """Leave the state machine and the pass row terminal after a pass is cut short."""
        self.state = SyncState.ABORTED
        if self._pass_id is None:
            return
        try:
            self.db_ops.update_sync_pass(
                self._pass_id,
                status='aborted',
                error_message=error_message,
                completed_at=datetime.utcnow()
            )
        except Exception as e:
            logger.error(f"Could not close sync pass {self._pass_id}: {e}", exc_info=True)

    def _validate(self, config: SyncConfig) -> Optional[str]:
        if not config.has_token:
            return MISSING_TOKEN_MESSAGE
        if not config.has_target:
            return MISSING_TARGET_MESSAGE
        return None

    def _decryption_context(self, pass_id: UUID, config: SyncConfig) -> Optional[DecryptionContext]:
        try:
            return derive_context(config.salt_value)
        except InvalidSaltError as e:
            if config.salt_value:
                logger.warning(f"Encrypted records cannot be decrypted this pass: {e}")
                self.db_ops.add_sync_log(pass_id, 'WARNING', f'Invalid salt: {e}')
            return None

    async def _run_pass(self, trigger: str, notify: bool) -> SyncResult:
        config = self.config_provider()

        self.state = SyncState.VALIDATING
        problem = self._validate(config)
        if problem:
            logger.info(f"Skipping {trigger} sync: {problem}")
            if notify:
                await self.notification_service.notify(problem, "warning")
            self.state = SyncState.IDLE
            return SyncResult(pass_id=None, status="aborted", state=self.state.value, message=problem)

        pass_id = uuid4()
        logger.info(f"Starting {trigger} sync pass {pass_id}")
        self.db_ops.create_sync_pass(pass_id, trigger)
        self._pass_id = pass_id
        self.db_ops.add_sync_log(pass_id, 'INFO', f'Starting {trigger} sync')
        context = self._decryption_context(pass_id, config)

        # Fetching
        self.state = SyncState.FETCHING
        try:
            records = await self.backend.list_pending_records()
        except (AuthError, ServerError, NetworkError) as e:
            return await self._abort(pass_id, str(e))

        self._forget_consumed(records)

        if not records:
            logger.info("No pending records")
            self.db_ops.update_sync_pass(
                pass_id,
                status='nothing_to_sync',
                completed_at=datetime.utcnow()
            )
            self.db_ops.add_sync_log(pass_id, 'INFO', NOTHING_TO_SYNC_MESSAGE)
            if notify:
                await self.notification_service.notify(NOTHING_TO_SYNC_MESSAGE)
            self.state = SyncState.IDLE
            return SyncResult(
                pass_id=str(pass_id),
                status="nothing_to_sync",
                state=self.state.value,
                message=NOTHING_TO_SYNC_MESSAGE
            )

        # Processing
        self.state = SyncState.PROCESSING
        self.db_ops.update_sync_pass(pass_id, total_records=len(records))
        logger.info(
            f"Syncing {len(records)} records to notebook [{config.notebook_name or config.notebook_id}] "
            f"document [{config.document_name or config.document_id}]"
        )
        written_ids, failed_ids, auth_error = await self._process_records(pass_id, records, config, context)

        # Acknowledging
        self.state = SyncState.ACKNOWLEDGING
        acknowledged = await self._acknowledge(pass_id, written_ids)

        summary = f"Sync finished, {len(written_ids)} records written"
        if failed_ids:
            summary += f", {len(failed_ids)} failed"
        if not acknowledged and written_ids:
            summary += ", confirmation pending"

        if auth_error:
            self.db_ops.update_sync_pass(
                pass_id,
                status='aborted',
                written_records=len(written_ids),
                failed_records=len(failed_ids),
                acknowledged=acknowledged,
                error_message=auth_error,
                completed_at=datetime.utcnow()
            )
            self.db_ops.add_sync_log(pass_id, 'ERROR', f'Sync aborted: {auth_error}')
            await self.notification_service.notify(auth_error, "error")
            self.state = SyncState.ABORTED
            return SyncResult(
                pass_id=str(pass_id),
                status="aborted",
                state=self.state.value,
                written_ids=written_ids,
                failed_ids=failed_ids,
                acknowledged=acknowledged,
                message=auth_error
            )

        self.db_ops.update_sync_pass(
            pass_id,
            status='completed',
            written_records=len(written_ids),
            failed_records=len(failed_ids),
            acknowledged=acknowledged,
            completed_at=datetime.utcnow()
        )
        self.db_ops.add_sync_log(pass_id, 'INFO', summary)
        logger.info(f"Sync pass {pass_id} completed: {summary}")
        await self.notification_service.notify(summary)

        self.state = SyncState.IDLE
        return SyncResult(
            pass_id=str(pass_id),
            status="completed",
            state=self.state.value,
            written_ids=written_ids,
            failed_ids=failed_ids,
            acknowledged=acknowledged,
            message=summary
        )

    async def _process_records(
        self,
        pass_id: UUID,
        records: List[NoteRecord],
        config: SyncConfig,
        context: Optional[DecryptionContext]
    ):
        """
        Transform and write records strictly in the order received.

        Returns:
            Tuple of (written IDs, failed IDs, auth error message or None)
        """
        already_written = set(self.db_ops.get_written_ids())
        cursor = self.db_ops.get_cursor()
        written_ids: List[str] = []
        failed_ids: List[str] = []

        for record in records:
            if record.id in already_written:
                logger.info(f"Record {record.id} was written by an earlier pass; acknowledging only")
                self.db_ops.add_sync_log(
                    pass_id, 'INFO', 'Already written, pending acknowledgment', record_id=record.id
                )
                written_ids.append(record.id)
                continue

            try:
                fragment = await self.transformer.transform(record, config, context)
                cursor = await self.writer.write_fragment(
                    fragment, cursor, config.document_id, config.timezone
                )
            except AuthError as e:
                logger.error(f"Authentication failed while processing record {record.id}: {e}")
                failed_ids.append(record.id)
                self.db_ops.add_sync_log(pass_id, 'ERROR', str(e), record_id=record.id)
                return written_ids, failed_ids, str(e)
            except Exception as e:
                logger.error(f"Error processing record {record.id}: {e}", exc_info=True)
                failed_ids.append(record.id)
                self.db_ops.add_sync_log(
                    pass_id, 'ERROR', f'Failed to write record: {e}', record_id=record.id
                )
                continue

            # Appended content is acknowledged even when the bookkeeping below fails
            written_ids.append(record.id)
            try:
                self.db_ops.mark_written(record.id, pass_id)
                self.db_ops.add_sync_log(
                    pass_id, 'INFO', f'Wrote {record.content_type.value} record', record_id=record.id
                )
                for warning in fragment.warnings:
                    self.db_ops.add_sync_log(pass_id, 'WARNING', warning, record_id=record.id)
                    await self.notification_service.notify(warning, "warning")
            except Exception as e:
                logger.error(f"Could not record write of {record.id}: {e}", exc_info=True)

        return written_ids, failed_ids, None

    def _forget_consumed(self, records: List[NoteRecord]) -> None:
        """
        Drop written-set entries the backend no longer lists as pending.

        Such records were acknowledged server-side, possibly by a request whose
        response never arrived, so they can never be redelivered.
        """
        pending = {record.id for record in records}
        consumed = [record_id for record_id in self.db_ops.get_written_ids() if record_id not in pending]
        if consumed:
            removed = self.db_ops.clear_written(consumed)
            logger.info(f"Forgot {removed} written records already consumed by the backend")

    async def _acknowledge(self, pass_id: UUID, written_ids: List[str]) -> bool:
        if not written_ids:
            return False

        try:
            await self.backend.acknowledge(written_ids)
        except (AuthError, ServerError, NetworkError) as e:
            # Content stays in the document; the backend resends these records next pass
            logger.error(f"Failed to acknowledge {len(written_ids)} records: {e}")
            self.db_ops.add_sync_log(pass_id, 'ERROR', f'Acknowledgment failed: {e}')
            await self.notification_service.notify(f"Failed to confirm synced records: {e}", "warning")
            return False

        self.db_ops.clear_written(written_ids)
        return True

    async def _abort(self, pass_id: UUID, error_message: str) -> SyncResult:
        logger.error(f"Sync pass {pass_id} aborted: {error_message}")
        self.db_ops.update_sync_pass(
            pass_id,
            status='aborted',
            error_message=error_message,
            completed_at=datetime.utcnow()
        )
        self.db_ops.add_sync_log(pass_id, 'ERROR', f'Sync aborted: {error_message}')
        await self.notification_service.notify(error_message, "error")
        self.state = SyncState.ABORTED
        return SyncResult(
            pass_id=str(pass_id),
            status="aborted",
            state=self.state.value,
            message=error_message
        )
