import base64
import pathlib
import shutil
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config_registry import DEFAULT_CATALOG_PATH, ConfigResolver, DocumentTypeRegistry, FileCatalogSource
from app.main import create_app
from app.security import CredentialContext

JWT_SECRET = "jwt_test_secret"
INTERNAL_TOKEN = "internal_test_token"
KEY_V1 = base64.b64encode(b"k" * 32).decode("ascii")
KEY_V2 = base64.b64encode(b"q" * 32).decode("ascii")


def issue_token(
    *,
    subject: str = "user_alice",
    org_id: str | None = "org_acme",
    roles: list[str] | None = None,
    document_types: list[str] | None = None,
    secret: str = JWT_SECRET,
    expires_in_s: int = 1800,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": int((now + timedelta(seconds=expires_in_s)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
        "roles": roles if roles is not None else ["hr_admin", "employee", "admin"],
    }
    if org_id is not None:
        payload["org_id"] = org_id
    if document_types is not None:
        payload["document_types"] = document_types
    return jwt.encode(payload, secret, algorithm="HS256")


def make_credential(
    *,
    subject: str = "user_alice",
    org_id: str = "org_acme",
    roles: tuple[str, ...] = ("hr_admin", "employee", "admin"),
    document_types: tuple[str, ...] = (),
) -> CredentialContext:
    return CredentialContext(
        token="test-token",
        subject=subject,
        org_id=org_id,
        roles=frozenset(roles),
        document_types=frozenset(document_types),
    )


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, token: str):
        self._client = client
        self._token = token

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                headers["Authorization"] = f"Bearer {self._token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture
def catalog_path(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "catalog.json"
    shutil.copyfile(DEFAULT_CATALOG_PATH, path)
    return path


@pytest.fixture(autouse=True)
def test_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch, catalog_path: pathlib.Path):
    monkeypatch.setenv("OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("CRUD_STORE_BACKEND", "memory")
    monkeypatch.setenv("CONFIG_CATALOG_PATH", str(catalog_path))
    monkeypatch.setenv("FILE_ENCRYPTION_KEYS", f"v1:{KEY_V1}")
    monkeypatch.setenv("FILE_ENCRYPTION_ACTIVE_KEY", "v1")
    monkeypatch.setenv("JOB_DISPATCH_TRANSPORT", "queue")
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("INTERNAL_API_TOKEN", INTERNAL_TOKEN)
    monkeypatch.delenv("CRUD_REQUIRE_TRUESTACK", raising=False)
    monkeypatch.delenv("JOB_QUEUE_MAX_PENDING", raising=False)
    monkeypatch.delenv("POSTGRES_APPLY_RLS", raising=False)
    monkeypatch.delenv("STORE_TIMEOUT_S", raising=False)
    yield


@pytest.fixture
def catalog(catalog_path: pathlib.Path):
    return FileCatalogSource(catalog_path).load()


@pytest.fixture
def resolver(catalog) -> ConfigResolver:
    return ConfigResolver(catalog, ttl_s=60)


@pytest.fixture
def document_types(catalog) -> DocumentTypeRegistry:
    return DocumentTypeRegistry(catalog)


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def raw_client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def client(raw_client: TestClient) -> AuthenticatedClient:
    return AuthenticatedClient(raw_client, token=issue_token())


@pytest.fixture
def client_as(raw_client: TestClient):
    def _make(**claims) -> AuthenticatedClient:
        return AuthenticatedClient(raw_client, token=issue_token(**claims))

    return _make


@pytest.fixture
def credential_for():
    return make_credential


@pytest.fixture
def credential() -> CredentialContext:
    return make_credential()


@pytest.fixture
def token_for():
    return issue_token
