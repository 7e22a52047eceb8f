from __future__ import annotations

import os
import signal
import socket
import time

from .config import settings
from .database import SessionLocal
from .digest import run_digest_sweep
from .logging_utils import configure_logging, log_event, log_warning
from .retention import purge_email_outbox, purge_sent_jobs

IDLE_SLEEP_SECONDS = 1.0


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _run_digest_sweep(worker_id: str) -> None:
    with SessionLocal() as db:
        result = run_digest_sweep(db)
    log_event("worker_digest_sweep", worker_id=worker_id, **result.model_dump())


def _run_retention(worker_id: str) -> None:
    with SessionLocal() as db:
        deleted = purge_sent_jobs(db)
        outbox_deleted = purge_email_outbox(db)
    log_event("worker_retention", worker_id=worker_id, deleted=deleted, outbox_deleted=outbox_deleted)


def run_due_tasks(worker_id: str, last_runs: dict[str, float], now: float) -> list[str]:
    """Run each periodic task whose interval has elapsed; returns the names that ran."""
    schedule = (
        ("digest_sweep", settings.digest_sweep_interval_seconds, _run_digest_sweep),
        ("retention", settings.retention_interval_seconds, _run_retention),
    )
    ran: list[str] = []
    for name, interval, task in schedule:
        if now - last_runs.get(name, 0.0) < max(1.0, float(interval)):
            continue
        last_runs[name] = now
        try:
            task(worker_id)
            ran.append(name)
        except Exception as exc:  # noqa: BLE001
            log_warning("worker_task_error", worker_id=worker_id, task=name, error=str(exc))
    return ran


def main() -> None:
    configure_logging()

    worker_id = os.getenv("WORKER_ID") or _default_worker_id()
    shutdown_requested = False

    def _handle_signal(signum, _frame):  # noqa: ANN001
        nonlocal shutdown_requested
        shutdown_requested = True
        log_warning("worker_shutdown_requested", worker_id=worker_id, signal=signum)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    log_event(
        "worker_started",
        worker_id=worker_id,
        digest_sweep_interval_seconds=settings.digest_sweep_interval_seconds,
        retention_interval_seconds=settings.retention_interval_seconds,
    )

    last_runs: dict[str, float] = {}
    while not shutdown_requested:
        run_due_tasks(worker_id, last_runs, time.time())
        time.sleep(IDLE_SLEEP_SECONDS)

    log_event("worker_stopped", worker_id=worker_id)


if __name__ == "__main__":
    main()
