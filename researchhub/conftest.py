# researchhub/conftest.py
import sys
import os
import pytest
from pathlib import Path

# Add repo root to PYTHONPATH so `researchhub.*` imports resolve
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Must be set before settings are first imported
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-for-researchhub-points")

TEST_SECRET = os.environ["AUTH_JWT_SECRET"]


@pytest.fixture(autouse=True)
def auth_settings():
    """Pin HS256 auth settings for every test and restore afterwards."""
    from researchhub.core.config import settings
    from researchhub.core.auth import set_token_resolver_for_tests

    orig = {
        "secret": settings.AUTH_JWT_SECRET,
        "aud": settings.AUTH_JWT_AUDIENCE,
        "iss": settings.AUTH_JWT_ISSUER,
        "url": settings.AUTH_URL,
    }
    settings.AUTH_JWT_SECRET = TEST_SECRET
    settings.AUTH_JWT_AUDIENCE = "authenticated"
    settings.AUTH_JWT_ISSUER = None
    settings.AUTH_URL = None
    set_token_resolver_for_tests(None)

    yield settings

    set_token_resolver_for_tests(None)
    settings.AUTH_JWT_SECRET = orig["secret"]
    settings.AUTH_JWT_AUDIENCE = orig["aud"]
    settings.AUTH_JWT_ISSUER = orig["iss"]
    settings.AUTH_URL = orig["url"]


@pytest.fixture
def memory_storage():
    from researchhub.storage.memory import MemoryStorage
    return MemoryStorage()


@pytest.fixture
def sql_storage():
    """SqlStorage over a private in-memory SQLite database."""
    from researchhub.core.database import create_all_tables, dispose_engine, init_engine
    from researchhub.storage.sql import SqlStorage

    init_engine("sqlite://")
    create_all_tables()
    yield SqlStorage()
    dispose_engine()


@pytest.fixture(autouse=True)
def storage(request):
    """
    Storage installed for the test.

    Memory by default; tests parametrized with indirect=["storage"] can ask
    for "sql" to run the same assertions against SqlStorage.
    """
    from researchhub.storage.factory import set_storage_for_tests

    backend = getattr(request, "param", "memory")
    if backend == "sql":
        instance = request.getfixturevalue("sql_storage")
    else:
        instance = request.getfixturevalue("memory_storage")
    set_storage_for_tests(instance)
    yield instance
    set_storage_for_tests(None)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from researchhub.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Build Authorization headers for a user with the given role."""
    from researchhub.core.auth import create_test_jwt

    def _make(user_id: str = "user_1", role: str = "participant", email: str = None) -> dict:
        token = create_test_jwt(sub=user_id, email=email or f"{user_id}@example.com", role=role)
        return {"Authorization": f"Bearer {token}"}

    return _make
