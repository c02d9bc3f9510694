import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_TEST_DIR = Path(tempfile.mkdtemp(prefix="helpdesk-tests-"))

os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "test-credential-key")
os.environ.setdefault("SQLITE_PATH", str(_TEST_DIR / "helpdesk-test.db"))
os.environ.setdefault("HELPDESK_WORKER_ENABLED", "false")
os.environ.setdefault("RETRY_BASE_DELAY_MS", "0")
os.environ.setdefault("RETRY_MAX_DELAY_MS", "0")
for _name in ("DB_HOST", "DB_USER", "DB_PASSWORD", "DB_NAME"):
    os.environ.pop(_name, None)


@pytest.fixture
async def database(anyio_backend):
    """A freshly migrated SQLite database, removed again after the test."""
    from helpdesk.core.database import db
    from helpdesk.services import ticket_audit

    await db.connect()
    await db.run_migrations()
    try:
        yield db
    finally:
        await ticket_audit.wait_for_pending()
        await db.disconnect()
        Path(os.environ["SQLITE_PATH"]).unlink(missing_ok=True)
