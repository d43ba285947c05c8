"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables (and a local .env file).

Two groups of settings live here:
- Server settings use the MCP_ prefix (MCP_HOST, MCP_PORT, MCP_TRANSPORT, ...)
- Microsoft identity settings keep their established unprefixed names
  (TENANT_ID, CLIENT_ID, USE_CLIENT_TOKEN, ...) so existing deployments of the
  bridge keep working unchanged.

The settings object only holds raw values. Turning them into an AuthConfig for
exactly one authentication mode is done by build_auth_config(), which is where
conflicting or incomplete configuration is rejected.
"""

from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from graph_bridge.auth import AuthConfig, AuthMode, ConfigurationError

# Public client registration used for interactive sign-in when no CLIENT_ID is set.
DEFAULT_INTERACTIVE_CLIENT_ID = "a9bac4c3-af0d-4292-9453-9da89e390140"
DEFAULT_INTERACTIVE_TENANT_ID = "common"
DEFAULT_REDIRECT_URI = "http://localhost:3000"


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Fields without an explicit alias map to an environment variable with the
    MCP_ prefix, e.g. `port` reads from MCP_PORT. Identity fields carry a
    validation_alias with their unprefixed variable name.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # "stdio" for MCP clients that spawn the server as a subprocess,
    # "streamable-http" to serve MCP plus the plain HTTP routes.
    transport: Literal["stdio", "streamable-http"] = "stdio"

    # Seconds before a downstream Graph / Azure RM call is abandoned.
    request_timeout: float = 60.0

    # Upper bound in seconds on an interactive (browser or device code) sign-in.
    interactive_timeout: int = 300

    # Liveness window in seconds given to a client-provided token that arrives
    # without an explicit expiry.
    default_token_lifetime: int = 3600

    # --- Authentication mode flags (at most one may be set) ---

    use_client_token: bool = Field(False, validation_alias="USE_CLIENT_TOKEN")
    use_interactive: bool = Field(False, validation_alias="USE_INTERACTIVE")
    use_certificate: bool = Field(False, validation_alias="USE_CERTIFICATE")

    # --- Microsoft identity settings ---

    tenant_id: str | None = Field(None, validation_alias="TENANT_ID")
    client_id: str | None = Field(None, validation_alias="CLIENT_ID")
    client_secret: str | None = Field(None, validation_alias="CLIENT_SECRET")
    certificate_path: str | None = Field(None, validation_alias="CERTIFICATE_PATH")
    certificate_password: str | None = Field(None, validation_alias="CERTIFICATE_PASSWORD")
    redirect_uri: str | None = Field(None, validation_alias="REDIRECT_URI")
    access_token: str | None = Field(None, validation_alias="ACCESS_TOKEN")
    access_token_expires_on: datetime | None = Field(
        None, validation_alias="ACCESS_TOKEN_EXPIRES_ON"
    )

    # Graph calls default to the beta endpoint unless this is explicitly false.
    use_graph_beta: bool = Field(True, validation_alias="USE_GRAPH_BETA")

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Lets tests build Settings(tenant_id=...) without the env var aliases.
        populate_by_name=True,
    )

    @property
    def default_graph_api_version(self) -> str:
        return "beta" if self.use_graph_beta else "v1.0"


def resolve_auth_mode(settings: Settings) -> AuthMode:
    """
    Pick the single authentication mode the environment asks for.

    The explicit flags win, in the order client token, interactive,
    certificate. Without any flag, complete client credentials select the
    client credentials flow and anything else falls back to interactive.

    Raises:
        ConfigurationError: If more than one mode flag is enabled
    """
    enabled = [
        settings.use_client_token,
        settings.use_interactive,
        settings.use_certificate,
    ]
    if sum(enabled) > 1:
        raise ConfigurationError(
            "Multiple authentication modes enabled. Please enable only one of "
            "USE_CLIENT_TOKEN, USE_INTERACTIVE, or USE_CERTIFICATE."
        )

    if settings.use_client_token:
        return AuthMode.CLIENT_PROVIDED_TOKEN
    if settings.use_interactive:
        return AuthMode.INTERACTIVE
    if settings.use_certificate:
        return AuthMode.CERTIFICATE
    if settings.tenant_id and settings.client_id and settings.client_secret:
        return AuthMode.CLIENT_CREDENTIALS
    return AuthMode.INTERACTIVE


def build_auth_config(settings: Settings) -> AuthConfig:
    """
    Translate settings into the AuthConfig for the resolved mode.

    Interactive mode may rely on the public tenant and client defaults; every
    other mode only sees what the environment explicitly provides, so missing
    values surface later as a ConfigurationError from AuthManager.initialize().
    """
    mode = resolve_auth_mode(settings)

    tenant_id = settings.tenant_id
    client_id = settings.client_id
    if mode is AuthMode.INTERACTIVE:
        tenant_id = tenant_id or DEFAULT_INTERACTIVE_TENANT_ID
        client_id = client_id or DEFAULT_INTERACTIVE_CLIENT_ID

    expires_on = settings.access_token_expires_on
    if expires_on is not None and expires_on.tzinfo is None:
        expires_on = expires_on.replace(tzinfo=timezone.utc)

    return AuthConfig(
        mode=mode,
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=settings.client_secret,
        certificate_path=settings.certificate_path,
        certificate_password=settings.certificate_password,
        access_token=settings.access_token,
        expires_on=expires_on,
        redirect_uri=settings.redirect_uri or DEFAULT_REDIRECT_URI,
        interactive_timeout=settings.interactive_timeout,
        default_token_lifetime=timedelta(seconds=settings.default_token_lifetime),
    )


# Singleton instance: import this from other modules.
# Created once at module load time, reads environment variables immediately.
settings = Settings()
