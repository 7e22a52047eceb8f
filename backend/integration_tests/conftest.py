import os
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import text


if os.environ.get("RUN_INTEGRATION_TESTS") != "1":
    pytest.skip(
        "Integration tests are disabled. Set RUN_INTEGRATION_TESTS=1 to enable.",
        allow_module_level=True,
    )

if not os.environ.get("DATABASE_URL"):
    pytest.skip("DATABASE_URL must be set for integration tests.", allow_module_level=True)

os.environ.setdefault("EMAIL_ENABLED", "false")

from notification_core.database import Base, SessionLocal, engine  # noqa: E402


def _run_migrations() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    alembic_ini = backend_root / "alembic.ini"
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(backend_root / "alembic"))
    command.upgrade(config, "head")


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    _run_migrations()
    yield
    Base.metadata.drop_all(bind=engine)
    with engine.begin() as connection:
        connection.execute(text("DROP TABLE IF EXISTS alembic_version"))


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        tables = [t.name for t in Base.metadata.sorted_tables]
        if tables:
            db.execute(text(f"TRUNCATE TABLE {', '.join(tables)} RESTART IDENTITY CASCADE"))
            db.commit()
        yield db
    finally:
        db.close()
