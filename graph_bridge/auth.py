"""
Authentication modes, credential lifecycle and the Graph auth adapter.

The AuthManager is the single authority for "which credential is active and is
it usable". It supports four mutually exclusive modes:

- client_credentials: app-only, tenant + client id + client secret
- certificate: app-only, tenant + client id + certificate file
- interactive: delegated, browser sign-in with a device code fallback
- client_provided_token: the MCP client supplies a bearer token out of band

Lifecycle of a manager:

    AuthManager(config)          credential is None (uninitialized)
        .initialize()            validate config -> build credential -> probe it
        .update_access_token()   client_provided_token only, mutates in place

Swapping in a credential with a different scope grant is not done here; the
permission upgrade (permissions.py) builds a whole new manager instead.

Token cryptography and the OAuth protocol itself are delegated to
azure-identity. Everything in this module works in terms of its get_token()
capability.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Protocol

import httpx
from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError
from azure.identity import (
    CertificateCredential,
    ClientSecretCredential,
    DeviceCodeCredential,
    InteractiveBrowserCredential,
)

from graph_bridge.credentials import DEFAULT_TOKEN_LIFETIME, ClientProvidedTokenCredential

logger = logging.getLogger("graph-bridge.auth")

GRAPH_RESOURCE = "https://graph.microsoft.com"
GRAPH_DEFAULT_SCOPE = f"{GRAPH_RESOURCE}/.default"
AZURE_MANAGEMENT_RESOURCE = "https://management.azure.com"
AZURE_MANAGEMENT_SCOPE = f"{AZURE_MANAGEMENT_RESOURCE}/.default"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BridgeError(Exception):
    """Base class for every error the bridge raises on purpose."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(BridgeError):
    """Required settings for the selected auth mode are missing or conflicting."""


class CredentialTestError(BridgeError):
    """The token probe run right after building a credential failed."""


class UnsupportedOperationError(BridgeError):
    """The operation is not available in the active auth mode."""


class TokenUnavailableError(BridgeError):
    """No usable access token could be obtained at call time."""


class NotInitializedError(BridgeError):
    """The manager has no credential yet."""


class ScopeValidationError(BridgeError):
    """
    One or more requested permission scopes are malformed.

    Attributes:
        invalid_scopes: Every offending entry, in request order
    """

    def __init__(self, message: str, invalid_scopes: list[str]):
        self.invalid_scopes = invalid_scopes
        super().__init__(message)


# ---------------------------------------------------------------------------
# Configuration and status types
# ---------------------------------------------------------------------------


class AuthMode(str, Enum):
    CLIENT_CREDENTIALS = "client_credentials"
    CERTIFICATE = "certificate"
    INTERACTIVE = "interactive"
    CLIENT_PROVIDED_TOKEN = "client_provided_token"


@dataclass(frozen=True)
class AuthConfig:
    """Everything needed to build a credential for one mode."""

    mode: AuthMode
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    certificate_path: str | None = None
    certificate_password: str | None = None
    access_token: str | None = None
    expires_on: datetime | None = None
    redirect_uri: str | None = None
    interactive_timeout: int | None = None
    default_token_lifetime: timedelta = DEFAULT_TOKEN_LIFETIME


# Fields that must be non-empty before a credential is built for a mode.
REQUIRED_FIELDS: dict[AuthMode, tuple[str, ...]] = {
    AuthMode.CLIENT_CREDENTIALS: ("tenant_id", "client_id", "client_secret"),
    AuthMode.CERTIFICATE: ("tenant_id", "client_id", "certificate_path"),
    AuthMode.INTERACTIVE: ("tenant_id", "client_id"),
    AuthMode.CLIENT_PROVIDED_TOKEN: (),
}


@dataclass(frozen=True)
class TokenStatus:
    is_expired: bool
    expires_on: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        status: dict[str, Any] = {"isExpired": self.is_expired}
        if self.expires_on is not None:
            status["expiresOn"] = self.expires_on.isoformat()
        return status


class TokenCredential(Protocol):
    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken | None: ...


# Called with (verification_uri, user_code, expires_on) when a device code
# sign-in needs the user to act.
PromptCallback = Callable[[str, str, datetime], None]


def print_device_code_prompt(verification_uri: str, user_code: str, expires_on: datetime) -> None:
    """
    Default device code prompt.

    Writes to stderr: with the stdio transport, stdout carries MCP messages.
    """
    print("\n" + "=" * 70, file=sys.stderr)
    print("AUTHENTICATION REQUIRED", file=sys.stderr)
    print("=" * 70, file=sys.stderr)
    print(f"Please visit: {verification_uri}", file=sys.stderr)
    print(f"And enter code: {user_code}", file=sys.stderr)
    print(f"The code expires at {expires_on.isoformat()}", file=sys.stderr)
    print("=" * 70 + "\n", file=sys.stderr)


def build_device_code_credential(
    tenant_id: str,
    client_id: str,
    prompt_callback: PromptCallback,
    timeout: int | None = None,
) -> DeviceCodeCredential:
    kwargs: dict[str, Any] = {}
    if timeout is not None:
        kwargs["timeout"] = timeout
    return DeviceCodeCredential(
        client_id=client_id,
        tenant_id=tenant_id,
        prompt_callback=prompt_callback,
        **kwargs,
    )


def build_browser_credential(
    tenant_id: str,
    client_id: str,
    redirect_uri: str | None,
    timeout: int | None = None,
) -> InteractiveBrowserCredential:
    kwargs: dict[str, Any] = {}
    if redirect_uri:
        kwargs["redirect_uri"] = redirect_uri
    if timeout is not None:
        kwargs["timeout"] = timeout
    return InteractiveBrowserCredential(tenant_id=tenant_id, client_id=client_id, **kwargs)


# ---------------------------------------------------------------------------
# Graph auth adapter
# ---------------------------------------------------------------------------


class TokenCredentialAuthProvider(httpx.Auth):
    """
    Adapts a credential to the Graph HTTP client.

    The Graph client only understands "give me a bearer token or fail", so a
    None from the credential, or an azure-identity error such as an expired
    secret, becomes a TokenUnavailableError here. The adapter
    keeps a reference to the credential, never a token: every request fetches
    again, which is how in-place token updates reach clients built earlier.
    """

    def __init__(self, credential: TokenCredential):
        self.credential = credential

    def get_access_token(self) -> str:
        try:
            token = self.credential.get_token(GRAPH_DEFAULT_SCOPE)
        except AzureError as e:
            raise TokenUnavailableError(f"Failed to acquire access token: {e}") from e
        if not token:
            raise TokenUnavailableError("Failed to acquire access token")
        return token.token

    def auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = f"Bearer {self.get_access_token()}"
        yield request

    async def async_auth_flow(self, request: httpx.Request):
        # Library credentials may block on network or user interaction.
        token = await asyncio.to_thread(self.get_access_token)
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


# ---------------------------------------------------------------------------
# Auth manager
# ---------------------------------------------------------------------------


class AuthManager:
    """
    Owns exactly one active credential and answers whether it is usable.

    Attributes:
        config: The AuthConfig this manager was built from (mode never changes)
        credential: The active credential, None until initialize() succeeds
    """

    def __init__(self, config: AuthConfig, prompt_callback: PromptCallback | None = None):
        self.config = config
        self.prompt_callback = prompt_callback or print_device_code_prompt
        self.credential: TokenCredential | None = None

    @classmethod
    def from_credential(
        cls,
        config: AuthConfig,
        credential: TokenCredential,
        prompt_callback: PromptCallback | None = None,
    ) -> "AuthManager":
        """Build a manager that already holds a credential acquired elsewhere."""
        manager = cls(config, prompt_callback=prompt_callback)
        manager.credential = credential
        return manager

    @property
    def is_initialized(self) -> bool:
        return self.credential is not None

    def initialize(self) -> None:
        """
        Validate the configuration, build the credential and probe it.

        The probe is skipped only in client_provided_token mode when no
        initial token was supplied: there is nothing to test until a token
        arrives through update_access_token().

        Raises:
            ConfigurationError: A required field for the mode is missing
            CredentialTestError: The probe returned no token or failed
        """
        self._validate_config()

        mode = self.config.mode
        logger.info(
            "Initializing authentication",
            extra={"event_data": {"auth_mode": mode.value}},
        )
        credential = self._build_credential()

        if mode is AuthMode.CLIENT_PROVIDED_TOKEN and not self.config.access_token:
            logger.info(
                "Started in client token mode without a token; "
                "use set-access-token to provide one"
            )
        else:
            self.test_credential(credential)

        self.credential = credential
        logger.info(
            "Authentication initialized",
            extra={"event_data": {"auth_mode": mode.value}},
        )

    def _validate_config(self) -> None:
        required = REQUIRED_FIELDS[self.config.mode]
        missing = [name for name in required if not getattr(self.config, name)]
        if missing:
            message = (
                f"{self.config.mode.value} mode requires "
                + ", ".join(name.upper() for name in required)
                + f" (missing: {', '.join(name.upper() for name in missing)})"
            )
            logger.error(
                "Invalid authentication configuration",
                extra={"event_data": {"auth_mode": self.config.mode.value, "missing": missing}},
            )
            raise ConfigurationError(message)

    def _build_credential(self) -> TokenCredential:
        # azure-identity validates tenant and client ids in its constructors.
        try:
            return self._construct_credential()
        except (ValueError, TypeError) as e:
            logger.error(
                "Invalid authentication configuration",
                extra={"event_data": {"auth_mode": self.config.mode.value, "error": str(e)}},
            )
            raise ConfigurationError(f"Invalid {self.config.mode.value} configuration: {e}") from e

    def _construct_credential(self) -> TokenCredential:
        cfg = self.config
        if cfg.mode is AuthMode.CLIENT_CREDENTIALS:
            return ClientSecretCredential(cfg.tenant_id, cfg.client_id, cfg.client_secret)

        if cfg.mode is AuthMode.CERTIFICATE:
            try:
                return CertificateCredential(
                    cfg.tenant_id,
                    cfg.client_id,
                    certificate_path=cfg.certificate_path,
                    password=cfg.certificate_password,
                )
            except (OSError, ValueError) as e:
                raise ConfigurationError(
                    f"Could not load certificate from {cfg.certificate_path}: {e}"
                ) from e

        if cfg.mode is AuthMode.INTERACTIVE:
            try:
                return build_browser_credential(
                    cfg.tenant_id, cfg.client_id, cfg.redirect_uri, cfg.interactive_timeout
                )
            except Exception as e:
                logger.info(
                    "Interactive browser failed, falling back to device code flow",
                    extra={"event_data": {"reason": str(e)}},
                )
                return build_device_code_credential(
                    cfg.tenant_id, cfg.client_id, self.prompt_callback, cfg.interactive_timeout
                )

        return ClientProvidedTokenCredential(
            cfg.access_token,
            cfg.expires_on,
            default_lifetime=cfg.default_token_lifetime,
        )

    def test_credential(self, credential: TokenCredential | None = None) -> None:
        """
        Request one Graph token to prove the credential works.

        Raises:
            NotInitializedError: No credential given and none active
            CredentialTestError: get_token returned nothing or raised
        """
        credential = credential or self.credential
        if credential is None:
            raise NotInitializedError("Credential not initialized")

        try:
            token = credential.get_token(GRAPH_DEFAULT_SCOPE)
        except Exception as e:
            logger.error(
                "Authentication test failed",
                extra={"event_data": {"auth_mode": self.config.mode.value, "error": str(e)}},
            )
            raise CredentialTestError(f"Authentication test failed: {e}") from e

        if not token:
            logger.error(
                "Authentication test failed",
                extra={"event_data": {"auth_mode": self.config.mode.value, "error": "no token"}},
            )
            raise CredentialTestError("Authentication test failed: no access token was returned")
        logger.info("Authentication successful")

    def update_access_token(self, access_token: str, expires_on: datetime | None = None) -> None:
        """
        Replace the client-provided token in place.

        Raises:
            UnsupportedOperationError: Outside client_provided_token mode
        """
        if self.config.mode is AuthMode.CLIENT_PROVIDED_TOKEN and isinstance(
            self.credential, ClientProvidedTokenCredential
        ):
            self.credential.update_token(access_token, expires_on)
            return
        raise UnsupportedOperationError(
            "Token update is only supported in client_provided_token mode. "
            f"Current mode: {self.config.mode.value}. Set USE_CLIENT_TOKEN=true "
            "in the server environment and restart to supply tokens."
        )

    def get_graph_auth_provider(self) -> TokenCredentialAuthProvider:
        if self.credential is None:
            raise NotInitializedError("Authentication not initialized")
        return TokenCredentialAuthProvider(self.credential)

    def get_azure_credential(self) -> TokenCredential:
        if self.credential is None:
            raise NotInitializedError("Authentication not initialized")
        return self.credential

    def get_auth_mode(self) -> AuthMode:
        return self.config.mode

    def is_client_credentials(self) -> bool:
        return self.config.mode is AuthMode.CLIENT_CREDENTIALS

    def is_client_provided_token(self) -> bool:
        return self.config.mode is AuthMode.CLIENT_PROVIDED_TOKEN

    def is_interactive(self) -> bool:
        return self.config.mode is AuthMode.INTERACTIVE

    def get_token_status(self) -> TokenStatus:
        """
        Expiry state of the active credential.

        Only a ClientProvidedTokenCredential can be inspected. azure-identity
        credentials refresh themselves and expose no status, so they always
        report is_expired=False.
        """
        if isinstance(self.credential, ClientProvidedTokenCredential):
            return TokenStatus(
                is_expired=self.credential.is_expired(),
                expires_on=self.credential.get_expiration_time(),
            )
        return TokenStatus(is_expired=False)
