"""
On-demand Microsoft Graph permission upgrade.

When a Graph call fails for lack of permissions in interactive mode, an agent
can ask for more scopes. That requires a fresh sign-in, and the resulting
credential carries a different grant than the old one. So instead of mutating
the current manager, the upgrade stages a brand new AuthManager and returns it;
the caller swaps manager and Graph client together (see AppContext).

Expected failures (wrong mode, malformed scopes, sign-in declined) come back as
an UpgradeFailure value, never as an exception, so that tool handlers can turn
them into actionable text for the agent.
"""

import logging
from dataclasses import dataclass, field

from azure.core.credentials import AccessToken

from graph_bridge.auth import (
    GRAPH_RESOURCE,
    AuthConfig,
    AuthManager,
    AuthMode,
    PromptCallback,
    ScopeValidationError,
    TokenCredential,
    TokenCredentialAuthProvider,
    TokenStatus,
    build_browser_credential,
    build_device_code_credential,
)

logger = logging.getLogger("graph-bridge.permissions")


@dataclass(frozen=True)
class ScopeUpgrade:
    """A fully staged replacement: new manager, its adapter and token status."""

    manager: AuthManager
    auth_provider: TokenCredentialAuthProvider
    token_status: TokenStatus
    scopes: list[str]


@dataclass(frozen=True)
class UpgradeFailure:
    """
    Why an upgrade did not happen.

    Attributes:
        reason: "unsupported_mode", "invalid_scopes" or "sign_in_failed"
        message: Human-readable explanation with remediation steps
        invalid_scopes: Offending entries when reason is "invalid_scopes"
    """

    reason: str
    message: str
    invalid_scopes: list[str] = field(default_factory=list)


def validate_scopes(scopes: list[str]) -> None:
    """
    Check that every scope looks like "Area.Permission".

    Raises:
        ScopeValidationError: The list is empty, or entries lack a "." or
            carry surrounding whitespace (all such entries are reported)
    """
    if not scopes:
        raise ScopeValidationError("At least one permission scope must be specified.", [])
    invalid = [scope for scope in scopes if "." not in scope or scope.strip() != scope]
    if invalid:
        raise ScopeValidationError(
            f"Invalid scope format detected: {', '.join(repr(s) for s in invalid)}. "
            "Scopes should be in format like 'User.Read' or 'Mail.ReadWrite'.",
            invalid,
        )


def remediation_message(mode: AuthMode, scopes: list[str], client_id: str | None = None) -> str:
    """Explain how to obtain additional scopes outside interactive mode."""
    bullets = "\n".join(f"   - {scope}" for scope in scopes)
    message = (
        "add-graph-permission is only available in interactive authentication mode. "
        f"Current mode: {mode.value}.\n\n"
    )

    if mode in (AuthMode.CLIENT_CREDENTIALS, AuthMode.CERTIFICATE):
        app = f" (Client ID: {client_id})" if client_id else ""
        message += (
            f"To add permissions in {mode.value} mode:\n"
            "1. Open the Microsoft Entra admin center (https://entra.microsoft.com)\n"
            "2. Navigate to Applications > App registrations\n"
            f"3. Find your application{app}\n"
            "4. Go to API permissions\n"
            '5. Click "Add a permission" and select Microsoft Graph\n'
            '6. Choose "Application permissions" and add the required scopes:\n'
            f"{bullets}\n"
            '7. Click "Grant admin consent" to approve the permissions\n'
            "8. Restart the MCP server to use the new permissions"
        )
    elif mode is AuthMode.CLIENT_PROVIDED_TOKEN:
        message += (
            f"To add permissions in {mode.value} mode:\n"
            "1. Obtain a new access token that includes the required scopes:\n"
            f"{bullets}\n"
            "2. Make sure these scopes are part of the consent prompt when signing in\n"
            "3. Call the set-access-token tool with the new token\n"
            "4. Subsequent requests will use the additional permissions"
        )
    else:
        message += (
            "To use interactive permission requests, set USE_INTERACTIVE=true "
            "in the server environment and restart the server."
        )
    return message


def _sign_in(
    scope_string: str,
    tenant_id: str,
    client_id: str,
    redirect_uri: str | None,
    prompt_callback: PromptCallback,
    timeout: int | None,
) -> tuple[TokenCredential, AccessToken | None]:
    try:
        credential = build_browser_credential(tenant_id, client_id, redirect_uri, timeout)
        return credential, credential.get_token(scope_string)
    except Exception as e:
        logger.info(
            "Interactive browser failed, falling back to device code flow",
            extra={"event_data": {"reason": str(e)}},
        )
    credential = build_device_code_credential(tenant_id, client_id, prompt_callback, timeout)
    return credential, credential.get_token(scope_string)


def request_additional_scopes(
    manager: AuthManager | None,
    scopes: list[str],
    *,
    tenant_id: str,
    client_id: str,
    redirect_uri: str | None = None,
    prompt_callback: PromptCallback | None = None,
    interactive_timeout: int | None = None,
) -> ScopeUpgrade | UpgradeFailure:
    """
    Perform a fresh interactive sign-in for additional Graph scopes.

    The given manager is never modified. On success the returned ScopeUpgrade
    holds a new manager; on any failure the caller keeps using the old one.
    This call blocks until the user finishes (or abandons) the sign-in.
    """
    if manager is None or not manager.is_interactive():
        mode = manager.get_auth_mode() if manager else None
        if mode is None:
            return UpgradeFailure(
                reason="unsupported_mode",
                message="add-graph-permission is unavailable: authentication is not initialized.",
            )
        return UpgradeFailure(
            reason="unsupported_mode",
            message=remediation_message(mode, scopes, client_id=manager.config.client_id),
        )

    try:
        validate_scopes(scopes)
    except ScopeValidationError as e:
        return UpgradeFailure(reason="invalid_scopes", message=e.message, invalid_scopes=e.invalid_scopes)

    prompt_callback = prompt_callback or manager.prompt_callback
    scope_string = " ".join(f"{GRAPH_RESOURCE}/{scope}" for scope in scopes)
    logger.info(
        "Requesting additional Graph permissions",
        extra={"event_data": {"scopes": scopes, "tenant_id": tenant_id, "client_id": client_id}},
    )

    try:
        credential, token = _sign_in(
            scope_string, tenant_id, client_id, redirect_uri, prompt_callback, interactive_timeout
        )
    except Exception as e:
        logger.error(
            "Sign-in for additional permissions failed",
            extra={"event_data": {"scopes": scopes, "error": str(e)}},
        )
        return UpgradeFailure(
            reason="sign_in_failed",
            message=f"Error requesting additional permissions: {e}",
        )

    if not token:
        return UpgradeFailure(
            reason="sign_in_failed",
            message=(
                "Failed to acquire access token with the requested scopes. "
                "Please check your permissions and try again."
            ),
        )

    config = AuthConfig(
        mode=AuthMode.INTERACTIVE,
        tenant_id=tenant_id,
        client_id=client_id,
        redirect_uri=redirect_uri,
        interactive_timeout=interactive_timeout,
        default_token_lifetime=manager.config.default_token_lifetime,
    )
    new_manager = AuthManager.from_credential(config, credential, prompt_callback=prompt_callback)
    logger.info(
        "Acquired fresh token with additional scopes",
        extra={"event_data": {"scopes": scopes}},
    )
    return ScopeUpgrade(
        manager=new_manager,
        auth_provider=new_manager.get_graph_auth_provider(),
        token_status=new_manager.get_token_status(),
        scopes=list(scopes),
    )
