#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def _bootstrap_imports() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_root))

    os.environ.setdefault("LOG_LEVEL", "INFO")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run scheduled notification maintenance once.")
    parser.add_argument("--digest-sweep", action="store_true", help="Email unread-message digests that are due.")
    parser.add_argument("--purge-jobs", action="store_true", help="Delete notification jobs past retention.")
    parser.add_argument("--batch-size", type=int, default=None, help="Override the digest batch size.")
    parser.add_argument("--retention-days", type=int, default=None, help="Override the job retention window.")
    args = parser.parse_args()

    _bootstrap_imports()

    from notification_core.database import SessionLocal  # noqa: PLC0415
    from notification_core.digest import run_digest_sweep  # noqa: PLC0415
    from notification_core.logging_utils import configure_logging  # noqa: PLC0415
    from notification_core.retention import purge_email_outbox, purge_sent_jobs  # noqa: PLC0415

    configure_logging()

    wanted = {"digest_sweep": bool(args.digest_sweep), "purge_jobs": bool(args.purge_jobs)}
    if not any(wanted.values()):
        wanted = {key: True for key in wanted}

    with SessionLocal() as db:
        if wanted["digest_sweep"]:
            result = run_digest_sweep(db, batch_size=args.batch_size)
            print(
                "digest sweep "
                f"selected={result.selected} processed={result.processed} "
                f"skipped={result.skipped} failed={result.failed} deferred={result.deferred}"
            )
        if wanted["purge_jobs"]:
            deleted = purge_sent_jobs(db, retention_days=args.retention_days)
            outbox_deleted = purge_email_outbox(db, retention_days=args.retention_days)
            print(f"purged notification jobs deleted={deleted} email_outbox_deleted={outbox_deleted}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
