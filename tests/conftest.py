"""
Shared test fixtures for the bridge test suite.

Key fixtures:
- identity: replaces the azure-identity credential classes with recording fakes,
  so no test ever reaches Microsoft Entra ID
- make_jwt: a factory for Graph-shaped JWT access tokens
- token_manager / library_manager: initialized AuthManagers for the common modes
- make_context: an AppContext whose HTTP clients talk to an httpx.MockTransport

Testing approach:
- test_credentials.py / test_auth.py / test_permissions.py exercise the auth
  core synchronously with fakes.
- test_context.py / test_executor.py drive the async session and request code
  against MockTransport handlers.
- test_tools.py runs the FastMCP ASGI app in memory and speaks JSON-RPC to it,
  exactly like a real MCP client would.
"""

import datetime
import time

import httpx
import jwt
import pytest
from azure.core.credentials import AccessToken

from graph_bridge import auth
from graph_bridge.auth import AuthConfig, AuthManager, AuthMode
from graph_bridge.context import AppContext

TEST_SIGNING_KEY = "test-signing-key-not-used-for-verification-0123"


# ---------------------------------------------------------------------------
# Fake azure-identity credentials
# ---------------------------------------------------------------------------


class FakeCredential:
    """
    Stand-in for an azure-identity credential.

    Records constructor arguments and every get_token() call. `token` may be
    set to None to make get_token() return nothing, and `error` to make it raise.
    """

    def __init__(self, kind, *args, token="library-token", error=None, **kwargs):
        self.kind = kind
        self.args = args
        self.kwargs = kwargs
        self.token = token
        self.error = error
        self.calls = []
        self.closed = False

    def get_token(self, *scopes, **kwargs):
        self.calls.append(scopes)
        if self.error is not None:
            raise self.error
        if self.token is None:
            return None
        return AccessToken(self.token, int(time.time()) + 3600)

    def close(self):
        self.closed = True


class FakeIdentity:
    """Factory registry patched over the azure-identity classes used by graph_bridge.auth."""

    def __init__(self):
        self.created = []
        self.token = "library-token"
        self.get_token_error = None
        self.browser_construct_error = None
        self.browser_get_token_error = None
        self.certificate_error = None
        self.construct_errors = {}

    def factory(self, kind):
        def _create(*args, **kwargs):
            if kind == "browser" and self.browser_construct_error is not None:
                raise self.browser_construct_error
            if kind == "certificate" and self.certificate_error is not None:
                raise self.certificate_error
            if kind in self.construct_errors:
                raise self.construct_errors[kind]
            error = self.browser_get_token_error if kind == "browser" else self.get_token_error
            credential = FakeCredential(kind, *args, token=self.token, error=error, **kwargs)
            self.created.append(credential)
            return credential

        return _create

    def kinds(self):
        return [c.kind for c in self.created]


@pytest.fixture
def identity(monkeypatch):
    """Patch every azure-identity credential class with a recording fake."""
    fake = FakeIdentity()
    monkeypatch.setattr(auth, "ClientSecretCredential", fake.factory("client_secret"))
    monkeypatch.setattr(auth, "CertificateCredential", fake.factory("certificate"))
    monkeypatch.setattr(auth, "InteractiveBrowserCredential", fake.factory("browser"))
    monkeypatch.setattr(auth, "DeviceCodeCredential", fake.factory("device_code"))
    return fake


# ---------------------------------------------------------------------------
# Token factory fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_jwt():
    """
    Factory fixture to generate Graph-shaped JWT access tokens.

    Usage in tests:
        def test_something(make_jwt):
            token = make_jwt(scopes=["User.Read"], exp_hours=1)
    """

    def _make_jwt(
        scopes: list[str] | None = None,
        roles: list[str] | None = None,
        audience: str = "https://graph.microsoft.com",
        exp_hours: float = 1.0,
    ) -> str:
        now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
        payload: dict = {
            "aud": audience,
            "iat": now,
            "exp": now + datetime.timedelta(hours=exp_hours),
        }
        if scopes is not None:
            payload["scp"] = " ".join(scopes)
        if roles is not None:
            payload["roles"] = roles
        return jwt.encode(payload, TEST_SIGNING_KEY, algorithm="HS256")

    return _make_jwt


# ---------------------------------------------------------------------------
# Manager fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def token_manager():
    """Factory for initialized client_provided_token managers."""

    def _token_manager(access_token=None, expires_on=None) -> AuthManager:
        manager = AuthManager(
            AuthConfig(
                mode=AuthMode.CLIENT_PROVIDED_TOKEN,
                access_token=access_token,
                expires_on=expires_on,
            )
        )
        manager.initialize()
        return manager

    return _token_manager


@pytest.fixture
def library_manager(identity):
    """Factory for initialized managers backed by fake library credentials."""

    def _library_manager(mode: AuthMode = AuthMode.CLIENT_CREDENTIALS) -> AuthManager:
        config = AuthConfig(
            mode=mode,
            tenant_id="contoso-tenant",
            client_id="app-client-id",
            client_secret="app-secret",
            certificate_path="/certs/app.pem",
            redirect_uri="http://localhost:3000",
        )
        manager = AuthManager(config, prompt_callback=lambda uri, code, expires: None)
        manager.initialize()
        return manager

    return _library_manager


# ---------------------------------------------------------------------------
# Context fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_context():
    """
    Factory for AppContexts wired to an httpx.MockTransport.

    Usage in tests:
        def handler(request: httpx.Request) -> httpx.Response: ...
        context = make_context(manager, handler)
    """

    def _make_context(manager: AuthManager, handler=None, **kwargs) -> AppContext:
        if handler is None:
            handler = lambda request: httpx.Response(404, json={"error": "unexpected request"})
        return AppContext(manager, transport=httpx.MockTransport(handler), **kwargs)

    return _make_context
