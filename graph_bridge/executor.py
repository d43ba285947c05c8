"""
Pass-through execution of Microsoft Graph and Azure Resource Management calls.

Graph requests go through the session's Graph client, whose auth adapter
fetches a token per request. Azure RM requests ask the raw credential for an
ARM-scoped token instead, once per page, because the Graph adapter is bound to
the Graph scope.

With fetch_all, list results are followed page by page and concatenated:
Graph pages are linked by "@odata.nextLink", Azure RM pages by "nextLink".
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from azure.core.exceptions import AzureError

from graph_bridge.auth import (
    AZURE_MANAGEMENT_RESOURCE,
    AZURE_MANAGEMENT_SCOPE,
    GRAPH_RESOURCE,
    BridgeError,
    NotInitializedError,
    TokenUnavailableError,
)
from graph_bridge.context import AppContext, AuthSession

logger = logging.getLogger("graph-bridge.executor")

ApiType = Literal["graph", "azure"]
HttpMethod = Literal["get", "post", "put", "patch", "delete"]

BODY_METHODS = ("post", "put", "patch")


class ApiRequestError(BridgeError):
    """
    A downstream API call failed.

    Attributes:
        status_code: HTTP status of the failing response, if there was one
        body: Parsed (or raw) response body of the failing response
    """

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass(frozen=True)
class ApiRequest:
    api_type: ApiType
    path: str
    method: HttpMethod
    api_version: str | None = None
    subscription_id: str | None = None
    query_params: dict[str, str] | None = None
    body: dict[str, Any] | None = None
    graph_api_version: str | None = None
    fetch_all: bool = False
    consistency_level: str | None = None


def effective_graph_version(context: AppContext, request: ApiRequest) -> str:
    if context.force_graph_v1:
        return "v1.0"
    return request.graph_api_version or context.default_graph_api_version


def base_url_for(context: AppContext, request: ApiRequest) -> str:
    if request.api_type == "graph":
        return f"{GRAPH_RESOURCE}/{effective_graph_version(context, request)}"
    return AZURE_MANAGEMENT_RESOURCE


def _join(base: str, path: str) -> str:
    return f"{base}/{path.lstrip('/')}"


def _parse_body(response: httpx.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return response.json()
    except ValueError:
        logger.error(
            "Failed to parse JSON response",
            extra={"event_data": {"url": str(response.request.url)}},
        )
        return {"rawResponse": text}


def _as_page(data: Any) -> dict[str, Any]:
    # A list page has no continuation link; anything else carries no items.
    if isinstance(data, dict):
        return data
    if isinstance(data, list):
        return {"value": data}
    return {}


def _check(response: httpx.Response, data: Any) -> None:
    if response.is_success:
        return
    logger.error(
        "Downstream API error",
        extra={"event_data": {"url": str(response.request.url), "status_code": response.status_code}},
    )
    raise ApiRequestError(
        f"API error ({response.status_code}) for {response.request.method} {response.request.url}",
        status_code=response.status_code,
        body=data,
    )


async def _execute_graph(context: AppContext, session: AuthSession, request: ApiRequest) -> Any:
    client = session.graph_client
    if client is None:
        raise NotInitializedError("Graph client not initialized")

    url = _join(base_url_for(context, request), request.path)
    headers = {}
    if request.consistency_level:
        headers["ConsistencyLevel"] = request.consistency_level
    params = request.query_params or None

    if request.method == "get" and request.fetch_all:
        logger.info("Fetching all pages for Graph path", extra={"event_data": {"path": request.path}})
        response = await client.get(url, params=params, headers=headers)
        first = _parse_body(response)
        _check(response, first)
        first = _as_page(first)
        items = list(first.get("value", []))
        next_link = first.get("@odata.nextLink")
        while next_link:
            response = await client.get(next_link, headers=headers)
            page = _parse_body(response)
            _check(response, page)
            page = _as_page(page)
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
        logger.info(
            "Finished fetching all Graph pages",
            extra={"event_data": {"path": request.path, "total_items": len(items)}},
        )
        return {"@odata.context": first.get("@odata.context"), "value": items}

    json_body = (request.body or {}) if request.method in BODY_METHODS else None
    response = await client.request(
        request.method.upper(), url, params=params, headers=headers, json=json_body
    )
    data = _parse_body(response)
    _check(response, data)
    if data is None:
        return {"status": "Success (No Content)"} if request.method == "delete" else {}
    return data


async def _azure_token(session: AuthSession) -> str:
    credential = session.manager.get_azure_credential()
    try:
        token = await asyncio.to_thread(credential.get_token, AZURE_MANAGEMENT_SCOPE)
    except AzureError as e:
        raise TokenUnavailableError(f"Failed to acquire Azure access token: {e}") from e
    if not token or not token.token:
        raise TokenUnavailableError("Failed to acquire Azure access token")
    return token.token


async def _execute_azure(context: AppContext, session: AuthSession, request: ApiRequest) -> Any:
    if not request.api_version:
        raise ApiRequestError("API version is required for Azure Resource Management queries")

    url = AZURE_MANAGEMENT_RESOURCE
    if request.subscription_id:
        url += f"/subscriptions/{request.subscription_id}"
    url = _join(url, request.path)
    params = {"api-version": request.api_version, **(request.query_params or {})}
    client = context.azure_client

    if request.method == "get" and request.fetch_all:
        logger.info("Fetching all pages for Azure RM", extra={"event_data": {"url": url}})
        all_values: list[Any] = []
        current: str | None = url
        current_params: dict[str, str] | None = params
        first_page = True
        while current:
            token = await _azure_token(session)
            response = await client.get(
                current, params=current_params, headers={"Authorization": f"Bearer {token}"}
            )
            data = _parse_body(response)
            _check(response, data)
            page = _as_page(data)
            next_link = page.get("nextLink")
            if isinstance(page.get("value"), list):
                all_values.extend(page["value"])
            elif first_page and not next_link:
                all_values.append(page)
            else:
                logger.warning(
                    "Azure RM page did not contain a 'value' array",
                    extra={"event_data": {"url": current}},
                )
            # nextLink already carries api-version and any query parameters.
            current, current_params, first_page = next_link, None, False
        logger.info(
            "Finished fetching all Azure RM pages",
            extra={"event_data": {"total_items": len(all_values)}},
        )
        return {"allValues": all_values}

    token = await _azure_token(session)
    json_body = (request.body or {}) if request.method in BODY_METHODS else None
    response = await client.request(
        request.method.upper(),
        url,
        params=params,
        json=json_body,
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
    )
    data = _parse_body(response)
    _check(response, data)
    return data if data is not None else {}


async def execute(context: AppContext, request: ApiRequest) -> str:
    """
    Run one API request and render it as the tool's result text.

    Raises:
        ApiRequestError: The API answered with an error status or the request was invalid
        TokenUnavailableError: No token could be obtained for the call
        NotInitializedError: Authentication has not been set up
        httpx.HTTPError: The request could not be sent
    """
    logger.info(
        "Executing Microsoft API request",
        extra={
            "event_data": {
                "api_type": request.api_type,
                "path": request.path,
                "method": request.method,
                "fetch_all": request.fetch_all,
            }
        },
    )
    async with context.use_session() as session:
        if request.api_type == "graph":
            data = await _execute_graph(context, session, request)
            version = effective_graph_version(context, request)
        else:
            data = await _execute_azure(context, session, request)
            version = request.api_version

    text = f"Result for {request.api_type} API ({version}) - {request.method} {request.path}:\n\n"
    text += json.dumps(data, indent=2)

    if request.method == "get" and not request.fetch_all:
        next_key = "@odata.nextLink" if request.api_type == "graph" else "nextLink"
        if isinstance(data, dict) and data.get(next_key):
            text += (
                "\n\nNote: More results are available. To retrieve all pages, "
                "add the parameter 'fetchAll: true' to your request."
            )
    return text


def describe_failure(context: AppContext, request: ApiRequest, error: Exception) -> dict[str, Any]:
    """JSON-ready error payload for a failed request."""
    status_code: Any = "N/A"
    body: Any = "N/A"
    if isinstance(error, ApiRequestError):
        if error.status_code is not None:
            status_code = error.status_code
        if error.body is not None:
            body = error.body if isinstance(error.body, str) else json.dumps(error.body)
    message = error.message if isinstance(error, BridgeError) else str(error)
    return {
        "error": message,
        "statusCode": status_code,
        "errorBody": body,
        "attemptedBaseUrl": base_url_for(context, request),
        "authMode": context.manager.get_auth_mode().value,
    }
