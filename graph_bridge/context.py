"""
The live authentication session shared by tool handlers and HTTP routes.

An AuthSession bundles the AuthManager with the Graph HTTP client built from
its adapter. The two are only ever replaced together: AppContext holds one
session reference, and the permission upgrade swaps that reference in a single
assignment once the new session is fully built.

Readers (API-calling tools) hold a session through `use_session()` for the
whole call, pagination included, and never lock. A replaced session stays
open until its last reader is done. Writers (token update, permission
upgrade) are serialized by one asyncio.Lock, so racing updates are applied
one after another instead of interleaving.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator

import httpx
from azure.core.exceptions import AzureError

from graph_bridge.auth import (
    AuthManager,
    PromptCallback,
    TokenCredentialAuthProvider,
    TokenStatus,
)
from graph_bridge.permissions import ScopeUpgrade, UpgradeFailure, request_additional_scopes

logger = logging.getLogger("graph-bridge.context")


@dataclass(eq=False)
class AuthSession:
    """
    One generation of authentication state.

    `readers` counts API calls currently using this session. A session replaced
    by a permission upgrade is marked `retired` and its resources are closed
    once the last reader leaves.
    """

    manager: AuthManager
    auth_provider: TokenCredentialAuthProvider | None
    graph_client: httpx.AsyncClient | None
    readers: int = 0
    retired: bool = False


class AppContext:
    """
    Holds the active AuthSession and the settings tools need at call time.

    Args:
        manager: An AuthManager; initialize() must already have run
        default_graph_api_version: "beta" or "v1.0"
        force_graph_v1: Ignore per-call graphApiVersion and always use v1.0
        request_timeout: Per-request timeout for downstream HTTP calls
        transport: Optional httpx transport (tests inject a MockTransport)
    """

    def __init__(
        self,
        manager: AuthManager,
        default_graph_api_version: str = "beta",
        force_graph_v1: bool = False,
        request_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        prompt_callback: PromptCallback | None = None,
    ):
        self.default_graph_api_version = default_graph_api_version
        self.force_graph_v1 = force_graph_v1
        self.request_timeout = request_timeout
        self.transport = transport
        self.prompt_callback = prompt_callback
        self._write_lock = asyncio.Lock()
        self.session = self._build_session(manager)
        # Azure RM calls attach their own bearer token per request.
        self.azure_client = self._new_client(auth=None)

    def _new_client(self, auth: httpx.Auth | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(auth=auth, timeout=self.request_timeout, transport=self.transport)

    def _build_session(self, manager: AuthManager) -> AuthSession:
        if not manager.is_initialized:
            return AuthSession(manager=manager, auth_provider=None, graph_client=None)
        provider = manager.get_graph_auth_provider()
        return AuthSession(manager=manager, auth_provider=provider, graph_client=self._new_client(provider))

    @asynccontextmanager
    async def use_session(self) -> AsyncIterator[AuthSession]:
        """Pin the current session for the duration of one API call."""
        session = self.session
        session.readers += 1
        try:
            yield session
        finally:
            session.readers -= 1
            if session.retired and session.readers == 0:
                await self._close_session(session)

    async def _close_session(self, session: AuthSession) -> None:
        if session.graph_client is not None:
            await session.graph_client.aclose()
        close = getattr(session.manager.credential, "close", None)
        if callable(close):
            try:
                close()
            except AzureError as e:
                logger.warning("Failed to close replaced credential: %s", e)

    @property
    def manager(self) -> AuthManager:
        return self.session.manager

    def is_ready(self) -> bool:
        """True when a credential is active and, if inspectable, unexpired."""
        manager = self.session.manager
        return manager.is_initialized and not manager.get_token_status().is_expired

    def token_status(self) -> TokenStatus:
        return self.session.manager.get_token_status()

    async def update_access_token(self, access_token: str, expires_on: datetime | None = None) -> None:
        """
        Update the client-provided token in place.

        The credential object is mutated, not replaced, so the Graph client
        already in the session sees the new token on its next request.

        Raises:
            UnsupportedOperationError: Outside client_provided_token mode
        """
        async with self._write_lock:
            self.session.manager.update_access_token(access_token, expires_on)

    async def upgrade_permissions(self, scopes: list[str]) -> ScopeUpgrade | UpgradeFailure:
        """
        Run the permission upgrade and, on success, swap in the new session.

        The sign-in runs in a worker thread because it blocks on the user. The
        current session is only replaced after the new one is fully built; on
        failure it is left exactly as it was. Calls still running on the old
        session finish on it before it is closed.
        """
        async with self._write_lock:
            current = self.session.manager
            config = current.config
            outcome = await asyncio.to_thread(
                request_additional_scopes,
                current,
                scopes,
                tenant_id=config.tenant_id,
                client_id=config.client_id,
                redirect_uri=config.redirect_uri,
                prompt_callback=self.prompt_callback,
                interactive_timeout=config.interactive_timeout,
            )
            if isinstance(outcome, UpgradeFailure):
                return outcome

            new_session = AuthSession(
                manager=outcome.manager,
                auth_provider=outcome.auth_provider,
                graph_client=self._new_client(outcome.auth_provider),
            )
            old_session, self.session = self.session, new_session

        old_session.retired = True
        if old_session.readers == 0:
            await self._close_session(old_session)
        else:
            logger.info(
                "Replaced session still in use, closing it after the last call",
                extra={"event_data": {"readers": old_session.readers}},
            )
        return outcome

    async def aclose(self) -> None:
        if self.session.graph_client is not None:
            await self.session.graph_client.aclose()
        await self.azure_client.aclose()
