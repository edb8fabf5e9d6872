"""Sync Service - FastAPI application."""

import asyncio
import logging
import sys
import os
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from typing import List, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import (
    get_asset_store_backend, get_aws_config, get_backend_config, get_key_file_path,
    get_siyuan_config, get_sync_config_from_env
)
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService, MIN_SALT_LENGTH, generate_salt
from shared.exceptions import AuthError, NetworkError, ServerError
from shared.models import SyncConfig

from services.backend_client.client import BackendClient
from services.content_transformer.assets import AssetStore, S3AssetStore, SiyuanAssetStore
from services.content_transformer.transformer import ContentTransformer
from services.document_writer.store import SiyuanDocumentStore
from services.document_writer.writer import DocumentWriter
from services.sync_service.notifications import NotificationService
from services.sync_service.orchestrator import SyncOrchestrator
from services.sync_service.scheduler import SyncScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
encryption_service: Optional[EncryptionService] = None
backend_client: Optional[BackendClient] = None
document_store: Optional[SiyuanDocumentStore] = None
asset_store: Optional[AssetStore] = None
notification_service: Optional[NotificationService] = None
orchestrator: Optional[SyncOrchestrator] = None
scheduler: Optional[SyncScheduler] = None
sync_config: SyncConfig = SyncConfig()
load_task: Optional[asyncio.Task] = None


def get_sync_config() -> SyncConfig:
    """Snapshot of the current settings; a pass never sees later edits."""
    return replace(sync_config)


def build_encryption_service() -> EncryptionService:
    if os.getenv("SYNC_ENCRYPTION_KEY"):
        return EncryptionService()
    return EncryptionService.from_key_file(get_key_file_path())


def build_asset_store() -> AssetStore:
    if get_asset_store_backend() == "s3":
        aws_config = get_aws_config()
        return S3AssetStore(
            bucket_name=aws_config["s3_bucket"],
            region=aws_config["region"],
            access_key_id=aws_config["access_key_id"],
            secret_access_key=aws_config["secret_access_key"]
        )
    siyuan_config = get_siyuan_config()
    return SiyuanAssetStore(siyuan_config["base_url"], siyuan_config["token"])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, encryption_service, backend_client, document_store, asset_store
    global notification_service, orchestrator, scheduler, sync_config, load_task

    logger.info("Sync Service starting up...")

    # Initialize database operations
    db_ops = DatabaseOperations()
    db_ops.create_tables()
    logger.info("Database connection initialized")

    # Initialize encryption service
    encryption_service = build_encryption_service()
    logger.info("Encryption service initialized")

    stored_config = db_ops.load_sync_config(encryption_service)
    sync_config = stored_config or get_sync_config_from_env()
    logger.info(f"Loaded sync config from {'database' if stored_config else 'environment'}")

    # Initialize HTTP clients
    backend_config = get_backend_config()
    backend_client = BackendClient(
        sync_config.token,
        backend_config["base_url"],
        timeout=backend_config["timeout"]
    )
    siyuan_config = get_siyuan_config()
    document_store = SiyuanDocumentStore(siyuan_config["base_url"], siyuan_config["token"])
    asset_store = build_asset_store()
    logger.info(
        f"HTTP clients initialized - Backend: {backend_config['base_url']}, "
        f"Documents: {siyuan_config['base_url']}, Assets: {type(asset_store).__name__}"
    )

    notification_service = NotificationService()
    orchestrator = SyncOrchestrator(
        backend=backend_client,
        transformer=ContentTransformer(backend_client, asset_store, document_store),
        writer=DocumentWriter(document_store, db_ops),
        db_ops=db_ops,
        config_provider=get_sync_config,
        notification_service=notification_service
    )
    scheduler = SyncScheduler(orchestrator)
    scheduler.configure(sync_config.sync_interval, sync_config.token)

    if sync_config.sync_on_load:
        load_task = asyncio.create_task(orchestrator.run_sync(trigger="load", notify=False))

    yield

    # Cleanup
    scheduler.stop()
    if load_task is not None and not load_task.done():
        load_task.cancel()
    await backend_client.aclose()
    await document_store.aclose()
    if isinstance(asset_store, SiyuanAssetStore):
        await asset_store.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Note Push Sync Service",
    description="Synchronizes captured Note Push records into a SiYuan notebook",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down",
            "timer": "running" if scheduler is not None and scheduler.running else "stopped"
        }
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Note Push Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Request/Response models
class SyncExecuteResponse(BaseModel):
    """Response model for sync execution."""
    pass_id: Optional[str] = None
    status: str
    state: str
    written_ids: List[str] = []
    failed_ids: List[str] = []
    acknowledged: bool = False
    message: str = ""


@app.post("/internal/sync/execute", response_model=SyncExecuteResponse, status_code=status.HTTP_200_OK)
async def execute_sync():
    """
    Run a manual sync pass and wait for it to finish.

    A request made while another pass is running returns immediately with
    status 'skipped'.

    Returns:
        SyncExecuteResponse describing the pass
    """
    logger.info("Received manual sync request")
    result = await orchestrator.run_sync(trigger="manual")
    return SyncExecuteResponse(**asdict(result))


class PassSummary(BaseModel):
    """Summary of one recorded sync pass."""
    pass_id: str
    trigger: str
    status: str
    total_records: int
    written_records: int
    failed_records: int
    acknowledged: bool
    created_at: str
    completed_at: Optional[str] = None
    error_message: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Response model for sync status."""
    state: str
    busy: bool
    timer_running: bool
    sync_interval: int
    last_pass: Optional[PassSummary] = None


def _pass_summary(sync_pass) -> PassSummary:
    return PassSummary(
        pass_id=str(sync_pass.pass_id),
        trigger=sync_pass.trigger,
        status=sync_pass.status,
        total_records=sync_pass.total_records or 0,
        written_records=sync_pass.written_records or 0,
        failed_records=sync_pass.failed_records or 0,
        acknowledged=bool(sync_pass.acknowledged),
        created_at=sync_pass.created_at.isoformat(),
        completed_at=sync_pass.completed_at.isoformat() if sync_pass.completed_at else None,
        error_message=sync_pass.error_message
    )


@app.get("/internal/sync/status", response_model=SyncStatusResponse, status_code=status.HTTP_200_OK)
async def get_sync_status():
    """Current orchestrator state, timer state and the most recent pass."""
    latest = db_ops.get_latest_sync_pass()
    return SyncStatusResponse(
        state=orchestrator.state.value,
        busy=orchestrator.busy,
        timer_running=scheduler.running,
        sync_interval=scheduler.interval,
        last_pass=_pass_summary(latest) if latest else None
    )


class PassLogEntry(BaseModel):
    level: str
    message: str
    record_id: Optional[str] = None
    created_at: str


class PassDetailResponse(PassSummary):
    """A sync pass with its log lines."""
    logs: List[PassLogEntry] = []


@app.get("/internal/sync/passes/{pass_id}", response_model=PassDetailResponse, status_code=status.HTTP_200_OK)
async def get_sync_pass(pass_id: str):
    """
    Get a recorded sync pass and its log.

    Raises:
        HTTPException: If pass_id is invalid or the pass is not found
    """
    try:
        pass_uuid = UUID(pass_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid pass_id format"
        )

    sync_pass = db_ops.get_sync_pass(pass_uuid)
    if not sync_pass:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync pass {pass_id} not found"
        )

    logs = [
        PassLogEntry(
            level=log.level,
            message=log.message,
            record_id=log.record_id,
            created_at=log.created_at.isoformat()
        )
        for log in db_ops.get_sync_logs(pass_uuid)
    ]
    return PassDetailResponse(**_pass_summary(sync_pass).model_dump(), logs=logs)


def mask_secret(value: str) -> str:
    """Show only enough of a secret to recognise it."""
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"


class SyncConfigResponse(BaseModel):
    """Current settings with secrets masked."""
    token: str
    sync_interval: int
    notebook_id: str
    notebook_name: str
    document_id: str
    document_name: str
    sync_on_load: bool
    salt_value: str
    timezone: Optional[str] = None


class SyncConfigUpdate(BaseModel):
    """Partial settings update; omitted fields keep their current value."""
    token: Optional[str] = None
    sync_interval: Optional[int] = None
    notebook_id: Optional[str] = None
    notebook_name: Optional[str] = None
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    sync_on_load: Optional[bool] = None
    salt_value: Optional[str] = None
    timezone: Optional[str] = None


def _config_response(config: SyncConfig) -> SyncConfigResponse:
    data = asdict(config)
    data["token"] = mask_secret(config.token)
    data["salt_value"] = mask_secret(config.salt_value)
    return SyncConfigResponse(**data)


def apply_sync_config(config: SyncConfig) -> None:
    """Persist new settings and push them to the client and the timer."""
    global sync_config

    db_ops.save_sync_config(config, encryption_service)
    sync_config = config
    backend_client.update_token(config.token)
    scheduler.configure(config.sync_interval, config.token)
    logger.info("Sync config updated")


@app.get("/internal/sync/config", response_model=SyncConfigResponse, status_code=status.HTTP_200_OK)
async def get_config():
    return _config_response(sync_config)


@app.put("/internal/sync/config", response_model=SyncConfigResponse, status_code=status.HTTP_200_OK)
async def update_config(request: SyncConfigUpdate):
    """
    Update settings, persist them and restart the timer.

    Raises:
        HTTPException: If the interval is negative, the salt is too short
                       or the timezone is unknown
    """
    changes = request.model_dump(exclude_unset=True)

    if changes.get("sync_interval") is not None and changes["sync_interval"] < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="sync_interval must be 0 or greater"
        )

    salt = changes.get("salt_value")
    if salt and len(salt) < MIN_SALT_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Salt must be at least {MIN_SALT_LENGTH} characters"
        )

    timezone = changes.get("timezone")
    if timezone:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown timezone: {timezone}"
            )

    new_config = replace(sync_config, **{k: v for k, v in changes.items() if v is not None or k == "timezone"})
    apply_sync_config(new_config)
    return _config_response(new_config)


class TokenCheckRequest(BaseModel):
    """Token to validate; the configured token when omitted."""
    token: Optional[str] = None
    save: bool = False


class TokenCheckResponse(BaseModel):
    valid: bool
    user_id: str
    is_paid: bool
    paid_expires_at: Optional[str] = None
    note_used: int
    note_limit: Optional[int] = None
    link_used: int
    link_limit: Optional[int] = None


@app.post("/internal/sync/token/check", response_model=TokenCheckResponse, status_code=status.HTTP_200_OK)
async def check_token(request: TokenCheckRequest):
    """
    Validate a token by fetching the account quota.

    When save is set and the token is valid, it replaces the configured token.

    Raises:
        HTTPException: 401 for a rejected token, 400 for a backend error,
                       502 when the backend cannot be reached
    """
    token = request.token if request.token is not None else sync_config.token
    if not token or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Please configure the token first"
        )

    checker = BackendClient(token, backend_client.base_url, http_client=backend_client.http)
    try:
        quota = await checker.get_quota()
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except ServerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NetworkError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    if request.save and token != sync_config.token:
        apply_sync_config(replace(sync_config, token=token))

    return TokenCheckResponse(
        valid=True,
        user_id=quota.user_id,
        is_paid=quota.is_paid,
        paid_expires_at=quota.paid_expires_at.isoformat() if quota.paid_expires_at else None,
        note_used=quota.note_used,
        note_limit=quota.note_limit,
        link_used=quota.link_used,
        link_limit=quota.link_limit
    )


class SaltResponse(BaseModel):
    salt_value: str


@app.post("/internal/sync/salt", response_model=SaltResponse, status_code=status.HTTP_200_OK)
async def regenerate_salt():
    """
    Generate and store a new salt.

    The value is returned in full so it can be shared with the capture client;
    records encrypted with the previous salt can no longer be decrypted.
    """
    salt = generate_salt()
    apply_sync_config(replace(sync_config, salt_value=salt))
    logger.info("Generated a new salt")
    return SaltResponse(salt_value=salt)


class NotificationMessage(BaseModel):
    level: str
    message: str
    created_at: str


@app.get("/internal/sync/messages", response_model=List[NotificationMessage], status_code=status.HTTP_200_OK)
async def get_messages(limit: int = 20):
    """Recent user-facing messages, newest last."""
    return [NotificationMessage(**message) for message in notification_service.recent(limit)]


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
