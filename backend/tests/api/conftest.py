"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from phasegate.core.auth import AuthUser


@pytest.fixture
def current_user() -> dict:
    """Mutable holder so a test can switch the authenticated user mid-test."""
    return {"user": AuthUser(user_id="A1", claims={"sub": "A1", "roles": ["admin"]})}


@pytest.fixture
def api_client(tmp_path, phases, facts, rules, current_user):
    """FastAPI test client backed by a temporary SQLite database.

    Initializes the global database via init_db inside the TestClient's
    own event loop so route handlers can use get_session_factory(). Phases,
    facts and rules come from the shared in-memory fixtures.
    """
    from phasegate.api.deps import get_fact_provider, get_phase_directory, get_rule_catalog
    from phasegate.api.routes import api_router
    from phasegate.core.auth import require_auth
    from phasegate.db import close_db, init_db
    from phasegate.main import register_exception_handlers
    from phasegate.middleware.correlation import setup_correlation_middleware

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        import phasegate.db.base as db_mod

        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url)
        yield
        await close_db()

    app = FastAPI(title="Phase Gate Service - Test Client", version="0.1.0", lifespan=test_lifespan)

    setup_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    app.dependency_overrides[require_auth] = lambda: current_user["user"]
    app.dependency_overrides[get_fact_provider] = lambda: facts
    app.dependency_overrides[get_phase_directory] = lambda: phases
    app.dependency_overrides[get_rule_catalog] = lambda: rules

    with TestClient(app) as client:
        yield client
