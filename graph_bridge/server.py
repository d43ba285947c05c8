"""
MCP server exposing Microsoft Graph and Azure Resource Management as tools.

This module builds the FastMCP server with:
- microsoft-api: pass-through Graph / Azure RM requests with optional pagination
- set-access-token: supply or refresh the bearer token (client token mode)
- get-auth-status: current auth mode, readiness and token expiry
- add-graph-permission: interactive sign-in for additional Graph scopes
- Plain HTTP routes for clients that cannot speak MCP (streamable-http only),
  including generic /api/mcp/tools/list and /api/mcp/tools/call

Architecture:
    The server never reaches for global state. create_server() receives an
    AppContext and every tool and route closes over it:

    1. main() reads Settings and resolves exactly one auth mode
    2. AuthManager.initialize() builds and probes the credential; failures
       here are fatal and the process exits with status 1
    3. AppContext pairs the manager with a Graph HTTP client
    4. Tools read context.session per call; token updates mutate the
       credential in place, permission upgrades swap the whole session

    Recoverable failures never escape a tool: they are raised as ToolError,
    which FastMCP turns into a result with isError=true, and the message says
    which auth mode is active and what to do about it.

Running the server:
    python -m graph_bridge.server

    MCP_TRANSPORT=streamable-http serves on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Health and readiness checks at /health and /ready
    - REST routes under /api
"""

import json
import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

import httpx
from fastmcp import Client, FastMCP
from fastmcp.exceptions import ToolError
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from graph_bridge.auth import (
    AuthManager,
    AuthMode,
    BridgeError,
    ConfigurationError,
    CredentialTestError,
    TokenUnavailableError,
    UnsupportedOperationError,
)
from graph_bridge.config import build_auth_config, settings
from graph_bridge.context import AppContext
from graph_bridge.credentials import ClientProvidedTokenCredential, inspect_token
from graph_bridge.executor import ApiRequest, describe_failure, execute
from graph_bridge.logs import configure_logging
from graph_bridge.permissions import UpgradeFailure

logger = logging.getLogger("graph-bridge.server")


# ---------------------------------------------------------------------------
# Request models shared by the MCP tools and the HTTP routes
# ---------------------------------------------------------------------------


class ApiCall(BaseModel):
    """Arguments of a Microsoft API call, in their camelCase wire names."""

    model_config = ConfigDict(populate_by_name=True)

    api_type: Literal["graph", "azure"] = Field(alias="apiType")
    path: str
    method: Literal["get", "post", "put", "patch", "delete"]
    api_version: str | None = Field(None, alias="apiVersion")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    query_params: dict[str, str] | None = Field(None, alias="queryParams")
    body: dict[str, Any] | None = None
    graph_api_version: Literal["v1.0", "beta"] | None = Field(None, alias="graphApiVersion")
    fetch_all: bool = Field(False, alias="fetchAll")
    consistency_level: str | None = Field(None, alias="consistencyLevel")

    def to_request(self) -> ApiRequest:
        return ApiRequest(**self.model_dump())


class TokenUpdate(BaseModel):
    access_token: str = Field(alias="accessToken", min_length=1)
    expires_on: datetime | None = Field(None, alias="expiresOn")


def token_remediation(mode: AuthMode) -> str:
    """What a caller should do when no token could be obtained in this mode."""
    if mode is AuthMode.CLIENT_PROVIDED_TOKEN:
        return (
            "No valid access token is available in client_provided_token mode. "
            "Obtain a fresh token and call set-access-token, then retry."
        )
    if mode is AuthMode.INTERACTIVE:
        return "Sign-in did not produce a token in interactive mode. Retry and complete the sign-in prompt."
    return (
        f"The {mode.value} credential could not obtain a token. Check the app registration "
        "secret or certificate and its granted permissions, then restart the server."
    )


def auth_status(context: AppContext) -> dict[str, Any]:
    manager = context.manager
    mode = manager.get_auth_mode()
    status: dict[str, Any] = {
        "authMode": mode.value,
        "isReady": context.is_ready(),
        "supportsTokenUpdates": mode is AuthMode.CLIENT_PROVIDED_TOKEN,
        "tokenStatus": manager.get_token_status().as_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    credential = manager.credential
    if isinstance(credential, ClientProvidedTokenCredential) and credential.access_token:
        status["tokenScopes"] = inspect_token(credential.access_token).scopes
    return status


def failure_payload(context: AppContext, request: ApiRequest, error: Exception) -> dict[str, Any]:
    payload = describe_failure(context, request, error)
    if isinstance(error, TokenUnavailableError):
        payload["action"] = token_remediation(context.manager.get_auth_mode())
    return payload


def extract_token(request: Request, body: Any = None) -> str | None:
    """Bearer token carried by an HTTP request: Authorization, then X-Access-Token, then body."""
    authorization = request.headers.get("authorization", "")
    if authorization.startswith("Bearer ") and authorization[7:].strip():
        return authorization[7:].strip()
    header_token = request.headers.get("x-access-token")
    if header_token:
        return header_token
    if isinstance(body, dict) and isinstance(body.get("accessToken"), str) and body["accessToken"]:
        return body["accessToken"]
    return None


async def apply_request_token(context: AppContext, token: str | None) -> None:
    """Install a per-request token in client token mode; other modes keep their own credential."""
    if token is None:
        return
    if not context.manager.is_client_provided_token():
        logger.info(
            "Ignoring request token outside client token mode",
            extra={"event_data": {"auth_mode": context.manager.get_auth_mode().value}},
        )
        return
    await context.update_access_token(token, inspect_token(token).expires_on)


def wire_dump(model: Any) -> dict[str, Any]:
    """An MCP protocol object in its camelCase wire form."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def tool_summary(tool: Any) -> dict[str, Any]:
    wire = wire_dump(tool)
    return {"name": wire["name"], "description": wire.get("description"), "inputSchema": wire["inputSchema"]}


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_server(context: AppContext) -> FastMCP:
    """Build the FastMCP server whose tools and routes operate on `context`."""
    mcp = FastMCP(
        name="graph-mcp-bridge",
        instructions=(
            "Bridge to Microsoft APIs. Use microsoft-api to call Microsoft Graph (Entra) "
            "or Azure Resource Management. If a Graph call fails for lack of permissions, "
            "use add-graph-permission (interactive mode) or supply a new token with "
            "set-access-token (client token mode)."
        ),
    )

    # -----------------------------------------------------------------------
    # Tool: microsoft-api
    # -----------------------------------------------------------------------
    @mcp.tool(
        name="microsoft-api",
        description=(
            "A versatile tool to interact with Microsoft APIs including Microsoft Graph (Entra) "
            "and Azure Resource Management. IMPORTANT: For Graph API GET requests using advanced "
            "query parameters ($filter, $count, $search, $orderby), you are ADVISED to set "
            "'consistencyLevel: \"eventual\"'."
        ),
    )
    async def microsoft_api(
        apiType: Annotated[
            Literal["graph", "azure"],
            Field(description="'graph' for Microsoft Graph (Entra) or 'azure' for Azure Resource Management."),
        ],
        path: Annotated[
            str, Field(description="The Azure or Graph API URL path to call (e.g. '/users', '/groups', '/subscriptions')")
        ],
        method: Annotated[Literal["get", "post", "put", "patch", "delete"], Field(description="HTTP method to use")],
        apiVersion: Annotated[
            str | None, Field(description="Azure Resource Management API version (required for apiType azure)")
        ] = None,
        subscriptionId: Annotated[str | None, Field(description="Azure Subscription ID (for Azure Resource Management).")] = None,
        queryParams: Annotated[dict[str, str] | None, Field(description="Query parameters for the request")] = None,
        body: Annotated[dict[str, Any] | None, Field(description="The request body (for POST, PUT, PATCH)")] = None,
        graphApiVersion: Annotated[
            Literal["v1.0", "beta"] | None,
            Field(description="Microsoft Graph API version to use (defaults to the server setting)"),
        ] = None,
        fetchAll: Annotated[
            bool, Field(description="Set to true to automatically fetch all pages for list results.")
        ] = False,
        consistencyLevel: Annotated[
            str | None,
            Field(description="Graph API ConsistencyLevel header. ADVISED to be 'eventual' for advanced queries."),
        ] = None,
    ) -> str:
        request = ApiRequest(
            api_type=apiType,
            path=path,
            method=method,
            api_version=apiVersion,
            subscription_id=subscriptionId,
            query_params=queryParams,
            body=body,
            graph_api_version=graphApiVersion,
            fetch_all=fetchAll,
            consistency_level=consistencyLevel,
        )
        try:
            return await execute(context, request)
        except (BridgeError, httpx.HTTPError) as e:
            logger.error(
                "microsoft-api call failed",
                extra={"event_data": {"api_type": apiType, "path": path, "method": method, "error": str(e)}},
            )
            raise ToolError(json.dumps(failure_payload(context, request, e))) from e

    # -----------------------------------------------------------------------
    # Tool: set-access-token
    # -----------------------------------------------------------------------
    @mcp.tool(
        name="set-access-token",
        description=(
            "Set or update the access token for Microsoft Graph authentication. Use this when "
            "the MCP client has obtained a fresh token through its own sign-in."
        ),
    )
    async def set_access_token(
        accessToken: Annotated[str, Field(description="The access token obtained from Microsoft sign-in")],
        expiresOn: Annotated[
            datetime | None,
            Field(description="Token expiration time in ISO format (optional, defaults to 1 hour from now)"),
        ] = None,
    ) -> str:
        try:
            await context.update_access_token(accessToken, expiresOn)
        except UnsupportedOperationError as e:
            raise ToolError(f"Error: {e.message}") from e
        logger.info("Tool executed: set-access-token")
        return (
            "Access token updated successfully. You can now make Microsoft Graph requests "
            "on behalf of the authenticated user."
        )

    # -----------------------------------------------------------------------
    # Tool: get-auth-status
    # -----------------------------------------------------------------------
    @mcp.tool(
        name="get-auth-status",
        description=(
            "Check the current authentication mode and token status of the server, including "
            "the permission scopes of a client-provided token."
        ),
    )
    async def get_auth_status() -> str:
        return json.dumps(auth_status(context), indent=2)

    # -----------------------------------------------------------------------
    # Tool: add-graph-permission
    # -----------------------------------------------------------------------
    @mcp.tool(
        name="add-graph-permission",
        description=(
            "Request additional Microsoft Graph permission scopes by performing a fresh "
            "interactive sign-in. Only works in interactive authentication mode; use it when a "
            "Graph API call fails with a permissions error."
        ),
    )
    async def add_graph_permission(
        scopes: Annotated[
            list[str],
            Field(description="Graph permission scopes to request (e.g. ['User.Read', 'Mail.ReadWrite'])"),
        ],
    ) -> str:
        outcome = await context.upgrade_permissions(scopes)
        if isinstance(outcome, UpgradeFailure):
            raise ToolError(f"Error: {outcome.message}")
        return json.dumps(
            {
                "message": "Successfully acquired additional Microsoft Graph permissions with fresh authentication",
                "requestedScopes": outcome.scopes,
                "tokenStatus": outcome.token_status.as_dict(),
                "note": "A fresh sign-in was performed to ensure the new permissions are properly granted",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )

    # -----------------------------------------------------------------------
    # HTTP routes
    # -----------------------------------------------------------------------
    # Plain HTTP, not MCP. Only served by the streamable-http transport.

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness probe: is the server process alive and responsive?"""
        return JSONResponse({"status": "healthy", "authMode": context.manager.get_auth_mode().value})

    @mcp.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        """Readiness probe: is there a usable credential right now?"""
        if not context.is_ready():
            return JSONResponse(
                {"status": "not_ready", "reason": token_remediation(context.manager.get_auth_mode())},
                status_code=503,
            )
        return JSONResponse({"status": "ready"})

    @mcp.custom_route("/api/auth/status", methods=["GET"])
    async def auth_status_route(request: Request) -> Response:
        return JSONResponse(auth_status(context))

    @mcp.custom_route("/api/auth/token", methods=["POST"])
    async def token_route(request: Request) -> Response:
        try:
            update = TokenUpdate.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": f"Invalid token update: {e}"}, status_code=400)
        try:
            await context.update_access_token(update.access_token, update.expires_on)
        except UnsupportedOperationError as e:
            return JSONResponse({"error": e.message}, status_code=409)
        return JSONResponse({"status": "updated", "tokenStatus": context.token_status().as_dict()})

    @mcp.custom_route("/api/microsoft", methods=["POST"])
    async def microsoft_route(request: Request) -> Response:
        try:
            payload = await request.json()
            call = ApiCall.model_validate(payload)
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)
        await apply_request_token(context, extract_token(request, payload))
        api_request = call.to_request()
        try:
            result = await execute(context, api_request)
        except (BridgeError, httpx.HTTPError) as e:
            return JSONResponse(failure_payload(context, api_request, e), status_code=502)
        return JSONResponse({"result": result})

    # The generic tool routes go through an in-memory MCP client so that HTTP
    # callers get exactly what an MCP client would.

    @mcp.custom_route("/api/mcp/tools/list", methods=["GET"])
    async def tools_list_route(request: Request) -> Response:
        async with Client(mcp) as client:
            tools = await client.list_tools()
        return JSONResponse({"tools": [tool_summary(t) for t in tools]})

    @mcp.custom_route("/api/mcp/tools/call", methods=["POST"])
    async def tools_call_route(request: Request) -> Response:
        try:
            payload = await request.json()
        except ValueError as e:
            return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)
        if not isinstance(payload, dict) or not payload.get("name"):
            return JSONResponse({"error": "Tool name is required"}, status_code=400)
        name = payload["name"]
        arguments = payload.get("arguments") or {}
        if not isinstance(arguments, dict):
            return JSONResponse({"error": "Tool arguments must be an object"}, status_code=400)

        await apply_request_token(context, extract_token(request, payload))
        async with Client(mcp) as client:
            if name not in {t.name for t in await client.list_tools()}:
                return JSONResponse({"error": f"Unknown tool: {name}"}, status_code=404)
            result = await client.call_tool_mcp(name, arguments)
        wire = wire_dump(result)
        logger.info(
            "Tool called over HTTP",
            extra={"event_data": {"tool": name, "is_error": wire.get("isError", False)}},
        )
        return JSONResponse(wire)

    return mcp


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


def main() -> int:
    configure_logging(settings.log_level)

    try:
        manager = AuthManager(build_auth_config(settings))
        manager.initialize()
    except (ConfigurationError, CredentialTestError) as e:
        logger.error("Fatal error during startup", extra={"event_data": {"error": e.message}})
        return 1

    context = AppContext(
        manager,
        default_graph_api_version=settings.default_graph_api_version,
        force_graph_v1=not settings.use_graph_beta,
        request_timeout=settings.request_timeout,
    )
    mcp = create_server(context)

    mode = manager.get_auth_mode().value
    if settings.transport == "stdio":
        logger.info("Starting MCP server (transport=stdio, auth_mode=%s)", mode)
        mcp.run(transport="stdio")
    else:
        logger.info(
            "Starting MCP server on %s:%d (transport=streamable-http, auth_mode=%s)",
            settings.host,
            settings.port,
            mode,
        )
        mcp.run(
            transport="streamable-http",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
