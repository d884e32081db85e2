"""
Laburandik Seller Ops - Test Configuration
==========================================
Pytest fixtures and markers.

Upstream services (hosted database, MercadoLibre) are replaced by
httpx.MockTransport routers so every client under test runs its real
request/response handling.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

# Add backend to path for imports
BACKEND_PATH = Path(__file__).parent.parent / "apps" / "backend"
sys.path.insert(0, str(BACKEND_PATH))

# Settings are read when the app module is imported.
os.environ.setdefault("SUPABASE_URL", "https://db.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("MELI_CLIENT_ID", "test-client-id")
os.environ.setdefault("MELI_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("ENVIRONMENT", "development")

DB_URL = "https://db.test"
MELI_URL = "https://api.meli.test"


# =============================================================================
# Test Run Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Fast, no I/O, mocks only"
    )
    config.addinivalue_line(
        "markers", "integration: Drives the FastAPI app with mocked upstreams"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests requiring a live deployment"
    )


def pytest_collection_modifyitems(config, items):
    """Skip E2E tests unless E2E_ACTIVE is set."""
    if not os.getenv("E2E_ACTIVE"):
        skip_e2e = pytest.mark.skip(
            reason="E2E_ACTIVE not set. Run with E2E_ACTIVE=1 for E2E tests."
        )
        for item in items:
            if "e2e" in item.keywords:
                item.add_marker(skip_e2e)


# =============================================================================
# Mock Settings
# =============================================================================

@pytest.fixture
def mock_settings():
    """Provide application settings pointing at the mocked upstreams."""
    from config import Settings

    return Settings(
        supabase_url=DB_URL,
        supabase_service_role_key="test-service-role-key",
        supabase_anon_key="test-anon-key",
        meli_client_id="test-client-id",
        meli_client_secret="test-client-secret",
        meli_api_base_url=MELI_URL,
        meli_page_limit=2,
        meli_max_orders=10,
        meli_items_batch_size=2,
        meli_request_delay_seconds=0,
        cogs_batch_size=2,
        cogs_batch_delay_seconds=0,
        scan_debounce_seconds=2.0,
        token_storage="database",
    )


# =============================================================================
# Mock Upstreams
# =============================================================================

Responder = Callable[[httpx.Request], httpx.Response]


class MockUpstream:
    """
    Route table for httpx.MockTransport.

    Responses registered for the same (method, path) are served in order;
    the last one keeps answering once the others are used up. Unrouted
    requests get a PostgREST-style 404.
    """

    def __init__(self):
        self._routes: Dict[Tuple[str, str], List[Responder]] = {}
        self.requests: List[httpx.Request] = []

    def respond(self, method: str, path: str, json_body: Any = None, status: int = 200):
        def responder(request: httpx.Request) -> httpx.Response:
            if json_body is None:
                return httpx.Response(status)
            return httpx.Response(status, json=json_body)

        return self.handle(method, path, responder)

    def handle(self, method: str, path: str, responder: Responder):
        self._routes.setdefault((method.upper(), path), []).append(responder)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(
                404, json={"message": f"No route for {request.method} {request.url.path}"}
            )
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request)

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    @staticmethod
    def body(request: httpx.Request) -> Any:
        return json.loads(request.content) if request.content else None

    @staticmethod
    def params(request: httpx.Request) -> List[Tuple[str, str]]:
        return list(request.url.params.multi_items())


@pytest.fixture
def db_upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def meli_upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def db(mock_settings, db_upstream):
    from services.database import DatabaseClient

    client = httpx.AsyncClient(transport=httpx.MockTransport(db_upstream), base_url=DB_URL)
    return DatabaseClient(mock_settings, http_client=client)


@pytest.fixture
def meli(mock_settings, meli_upstream):
    from services.meli_client import MeliClient

    client = httpx.AsyncClient(transport=httpx.MockTransport(meli_upstream), base_url=MELI_URL)
    return MeliClient(mock_settings, http_client=client)


# =============================================================================
# Token Store
# =============================================================================

class FakeTokenStore:
    """In-memory token store keyed like the Redis one."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Optional[Exception] = None

    async def get(self, owner):
        if self.fail_with:
            raise self.fail_with
        return self.records.get(owner.key)

    async def save(self, owner, tokens):
        self.records[owner.key] = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "expires_at": tokens.expires_at,
            "token_type": tokens.token_type,
            "user_id": tokens.user_id,
        }

    async def delete(self, owner):
        self.records.pop(owner.key, None)


@pytest.fixture
def token_store() -> FakeTokenStore:
    return FakeTokenStore()


@pytest.fixture
def token_manager(token_store, meli, mock_settings):
    from services.token_store import TokenManager

    return TokenManager(token_store, meli, mock_settings)


# =============================================================================
# Sample Data
# =============================================================================

ORG_ID = "org-1"
USER_ID = "user-1"
MELI_USER_ID = "777"


@pytest.fixture
def app_user() -> Dict[str, Any]:
    return {
        "id": USER_ID,
        "email": "packer@laburandik.test",
        "user_metadata": {"full_name": "Ana Packer"},
    }


@pytest.fixture
def sample_orders() -> List[Dict[str, Any]]:
    """Three orders over two items; dates are relative to 2026-10-19T12:00Z."""
    return [
        {
            "id": 1,
            "status": "paid",
            "date_created": "2026-10-18T10:00:00.000-00:00",
            "order_items": [
                {"item": {"id": "MLA1", "variation_id": 11, "title": "Remera",
                          "seller_sku": "REM-S"}, "quantity": 2},
                {"item": {"id": "MLA2", "variation_id": None, "title": "Gorra"}, "quantity": 1},
            ],
        },
        {
            "id": 2,
            "status": "paid",
            "date_created": "2026-10-10T10:00:00.000-00:00",
            "order_items": [
                {"item": {"id": "MLA1", "variation_id": 12, "title": "Remera",
                          "seller_sku": "REM-M"}, "quantity": 4},
            ],
        },
        {
            "id": 3,
            "status": "paid",
            "date_created": "2026-09-25T10:00:00.000-00:00",
            "order_items": [
                {"item": {"id": "MLA1", "variation_id": 11, "title": "Remera",
                          "seller_sku": "REM-S"}, "quantity": 3},
            ],
        },
    ]


# =============================================================================
# API Client
# =============================================================================

@pytest.fixture
def member(db_upstream):
    """Register the organization_users row get_org_context resolves."""

    def register(role: str = "admin", current_meli_user_id: Optional[str] = MELI_USER_ID):
        db_upstream.respond("GET", "/rest/v1/organization_users", [{
            "organization_id": ORG_ID,
            "role": role,
            "current_meli_user_id": current_meli_user_id,
        }])

    return register


@pytest.fixture
def client(db, meli, token_manager, mock_settings, app_user):
    """
    TestClient with upstream clients and the session user overridden.

    Startup hooks do not run (no `with` block), so no real connections are
    opened. Tests declare the caller's membership through `member`.
    """
    from fastapi.testclient import TestClient

    from config import get_settings
    from dependencies import (
        get_current_user,
        get_database,
        get_debouncer,
        get_meli,
        get_token_manager,
    )
    from main import app
    from services.scan_utils import ScanDebouncer

    debouncer = ScanDebouncer(mock_settings.scan_debounce_seconds)

    app.dependency_overrides[get_settings] = lambda: mock_settings
    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[get_meli] = lambda: meli
    app.dependency_overrides[get_token_manager] = lambda: token_manager
    app.dependency_overrides[get_debouncer] = lambda: debouncer
    app.dependency_overrides[get_current_user] = lambda: app_user

    yield TestClient(app)

    app.dependency_overrides.clear()
