# readerpass/conftest.py
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Settings are built at import time; point them at a throwaway database first
_TEST_DB_DIR = tempfile.mkdtemp(prefix="readerpass-tests-")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'readerpass.db')}")

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all database tables once per test session."""
    from readerpass.core.database import create_all_tables
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_state():
    """
    Give every test a clean slate.

    Clears all rows, drops installed gateway adapters and empties the
    region lookup cache.
    """
    from readerpass.core.database import clear_all_tables
    from readerpass.features.billing.registry import reset_gateways
    from readerpass.features.region.service import reset_cache

    clear_all_tables()
    reset_gateways()
    reset_cache()
    yield
    reset_gateways()
