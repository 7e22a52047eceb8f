#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_OUT = REPO_ROOT / "contracts" / "notification_core.openapi.json"


def build_schema() -> dict:
    sys.path.insert(0, str(BACKEND_ROOT))
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("EMAIL_ENABLED", "false")

    from notification_core.api import app  # noqa: PLC0415

    return app.openapi()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Write the notification core OpenAPI contract.")
    parser.add_argument("--out", type=Path, default=DEFAULT_OUT, help="Destination JSON file.")
    args = parser.parse_args(argv)

    schema = build_schema()
    out_path: Path = args.out
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(schema, indent=2, sort_keys=True, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {out_path} ({len(schema.get('paths', {}))} paths)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
