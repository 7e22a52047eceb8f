from contextlib import asynccontextmanager
from typing import Optional
import logging
import secrets
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Response, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import models, schemas
from .admission import AdmissionStoreError, admit, admit_in_background
from .config import settings
from .database import engine, get_db
from .digest import clear_backlog, record_unread_message, run_digest_sweep
from .email_service import EmailTransport, get_email_transport
from .logging_utils import configure_logging, RequestIdMiddleware, log_event, log_warning
from .push_gateway import PushGatewayClient, get_push_gateway
from .retention import purge_email_outbox, purge_sent_jobs

configure_logging()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    try:
        from alembic import command
        from alembic.config import Config
        base_dir = Path(__file__).resolve().parent.parent
        alembic_ini = base_dir / 'alembic.ini'
        if not alembic_ini.exists():
            logging.warning('alembic.ini not found; skipping migrations')
            return
        cfg = Config(str(alembic_ini))
        cfg.set_main_option('script_location', str(base_dir / 'alembic'))
        command.upgrade(cfg, 'head')
        logging.info('Migrations applied to head')
    except Exception:
        logging.exception('Failed to run migrations on startup')


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError('DATABASE_URL is required')
    if not settings.internal_api_key:
        logging.warning('INTERNAL_API_KEY not set; internal notification routes are unauthenticated')
    if settings.email_enabled and (not settings.smtp_host or not settings.smtp_sender):
        logging.warning('Email enabled but SMTP host/sender missing; disabling email sending')
        settings.email_enabled = False


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Notification Core", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)


def require_internal_token(x_internal_token: Optional[str] = Header(default=None)) -> None:
    expected = settings.internal_api_key
    if not expected:
        return
    if not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    expected = settings.cron_secret
    if not expected:
        return
    if not authorization or not secrets.compare_digest(authorization, f"Bearer {expected}"):
        log_warning("cron_unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# ===================== ADMISSION =====================


@app.post(
    "/internal/notifications",
    response_model=schemas.AdmissionResult,
    dependencies=[Depends(require_internal_token)],
)
def admit_notification(
    payload: schemas.NotificationEvent,
    db: Session = Depends(get_db),
    gateway: PushGatewayClient = Depends(get_push_gateway),
):
    try:
        return admit(db, payload, gateway=gateway)
    except AdmissionStoreError as exc:
        log_warning("notification_store_unavailable", recipient_id=payload.recipient_id, error=str(exc))
        raise HTTPException(status_code=503, detail="Notification store unavailable")


@app.post(
    "/internal/notifications/async",
    response_model=schemas.AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_internal_token)],
)
def admit_notification_async(
    payload: schemas.NotificationEvent,
    background_tasks: BackgroundTasks,
    gateway: PushGatewayClient = Depends(get_push_gateway),
):
    admit_in_background(background_tasks, payload, gateway=gateway)
    return {"accepted": True}


# ===================== DIGEST =====================


@app.post(
    "/internal/digest/backlog",
    response_model=schemas.BacklogEntryResponse,
    dependencies=[Depends(require_internal_token)],
)
def add_backlog_message(payload: schemas.BacklogMessage, db: Session = Depends(get_db)):
    entry = record_unread_message(db, payload.recipient_id, payload.conversation_id, payload.sender_name)
    return {
        "recipient_id": entry.recipient_id,
        "conversation_id": entry.conversation_id,
        "unread_count": int(entry.unread_count),
    }


@app.delete(
    "/internal/digest/backlog/{recipient_id}/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_internal_token)],
)
def delete_backlog(recipient_id: str, conversation_id: str, db: Session = Depends(get_db)):
    clear_backlog(db, recipient_id, conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _digest_sweep(db: Session, transport: EmailTransport) -> schemas.DigestSweepResult:
    log_event("cron_digest_sweep_started")
    return run_digest_sweep(db, transport=transport)


@app.get(
    "/api/cron/digest-sweep",
    response_model=schemas.DigestSweepResult,
    dependencies=[Depends(require_cron_secret)],
)
def cron_digest_sweep(
    db: Session = Depends(get_db),
    transport: EmailTransport = Depends(get_email_transport),
):
    return _digest_sweep(db, transport)


@app.post(
    "/api/cron/digest-sweep",
    response_model=schemas.DigestSweepResult,
    dependencies=[Depends(require_cron_secret)],
)
def cron_digest_sweep_manual(
    db: Session = Depends(get_db),
    transport: EmailTransport = Depends(get_email_transport),
):
    return _digest_sweep(db, transport)


# ===================== MAINTENANCE =====================


@app.post(
    "/internal/maintenance/purge-jobs",
    response_model=schemas.PurgeResponse,
    dependencies=[Depends(require_internal_token)],
)
def purge_jobs(db: Session = Depends(get_db)):
    deleted = purge_sent_jobs(db)
    return {"deleted": deleted, "email_outbox_deleted": purge_email_outbox(db)}


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "ok"}
    except Exception:
        raise HTTPException(status_code=503, detail="Database unavailable")
