"""Pytest configuration and shared fixtures.

Provides common fixtures for:
- Temporary database paths
- Mock environment variables
- Settings, document store and sync state fixtures
- Pre-populated local collections
"""

import pytest
from pathlib import Path
import tempfile


# =============================================================================
# TEMPORARY PATHS
# =============================================================================

@pytest.fixture
def temp_db_path():
    """Create a temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_catalog.db"


@pytest.fixture
def temp_log_path():
    """Create a temporary log file path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.log"


# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

@pytest.fixture
def mock_env_vars(monkeypatch, temp_db_path):
    """Set up mock environment variables for testing.

    This provides a complete set of environment variables needed
    for remote syncs, with no delay between remote calls.
    """
    monkeypatch.setenv("SHOPIFY_STORE_DOMAIN", "test-store.myshopify.com")
    monkeypatch.setenv("SHOPIFY_ACCESS_TOKEN", "shpat_test_token")
    monkeypatch.setenv("SHOPIFY_API_VERSION", "2024-07")
    monkeypatch.setenv("SHOPIFY_RATE_LIMIT_DELAY", "0")
    monkeypatch.setenv("DATABASE_PATH", str(temp_db_path))
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


@pytest.fixture
def no_credentials_env(monkeypatch, temp_db_path):
    """Environment with no remote credentials configured."""
    monkeypatch.delenv("SHOPIFY_STORE_DOMAIN", raising=False)
    monkeypatch.delenv("SHOPIFY_ACCESS_TOKEN", raising=False)
    monkeypatch.setenv("DATABASE_PATH", str(temp_db_path))


@pytest.fixture
def mock_settings(mock_env_vars):
    """Create settings with mock environment variables."""
    from catalog_sync.config import Settings
    return Settings(_env_file=None)


# =============================================================================
# STORE FIXTURES
# =============================================================================

@pytest.fixture
def store(temp_db_path):
    """Create a real document store for testing."""
    from catalog_sync.database import DocumentStore
    return DocumentStore(temp_db_path)


@pytest.fixture
def state_store(store):
    """Sync state accessor over the test store."""
    from catalog_sync.sync_state import SyncStateStore
    return SyncStateStore(store)


@pytest.fixture
def local_inventory_item(store):
    """Insert one local inventory item and return its id."""
    def _insert(sku="WM-LAV-001", doc_id="inv-1", **fields):
        data = {
            "sku": sku,
            "productTitle": "Lavender Wax Melt",
            "price": 4.99,
            "quantity": 50,
            "status": "Active",
        }
        data.update(fields)
        store.set("inventory", doc_id, data)
        return doc_id

    return _insert


@pytest.fixture
def failing_commit(store, monkeypatch):
    """Make store commits fail, either the Nth commit or any touching a collection.

    Returns a control dict; set ``control["enabled"] = False`` to let
    commits through again.
    """
    from catalog_sync.database import DocumentStoreError

    def _install(nth=None, collection=None):
        real_commit = store.commit
        control = {"enabled": True, "calls": 0}

        def commit(ops):
            control["calls"] += 1
            if control["enabled"]:
                if nth is not None and control["calls"] == nth:
                    raise DocumentStoreError("backend down")
                if collection is not None and any(op.collection == collection for op in ops):
                    raise DocumentStoreError("backend down")
            real_commit(ops)

        monkeypatch.setattr(store, "commit", commit)
        return control

    return _install
