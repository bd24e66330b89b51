"""HTTP node handlers - HTTP Request."""

import json
from typing import Any, Dict, Optional

import httpx

from core.logging import get_logger
from services.execution.exceptions import NodeError
from services.execution.invoker import NodeContext

logger = get_logger(__name__)


def _parse_headers(headers: Any) -> Dict[str, str]:
    if not headers:
        return {}
    if isinstance(headers, dict):
        return {str(k): str(v) for k, v in headers.items()}
    try:
        parsed = json.loads(headers)
    except (TypeError, json.JSONDecodeError):
        raise NodeError("headers must be a JSON object", fatal=True)
    if not isinstance(parsed, dict):
        raise NodeError("headers must be a JSON object", fatal=True)
    return {str(k): str(v) for k, v in parsed.items()}


def _auth_headers(context: NodeContext) -> Dict[str, str]:
    """Bearer token or a custom header from the first attached credential."""
    for data in context.credentials.values():
        if data.get('token'):
            return {"Authorization": f"Bearer {data['token']}"}
        if data.get('headerName') and data.get('headerValue'):
            return {data['headerName']: data['headerValue']}
    return {}


async def handle_http_request(parameters: Dict[str, Any], context: NodeContext,
                              transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Handle HTTP request node execution.

    Makes HTTP requests to external APIs. Status codes >= 400 fail the node
    (retryable for 5xx and 429, fatal otherwise).

    Args:
        parameters: Resolved parameters (method, url, headers, body, timeout)
        context: Node context with resolved credentials
        transport: Optional httpx transport, used by tests

    Returns:
        Response status, data and headers
    """
    method = str(parameters.get('method', 'GET')).upper()
    url = parameters.get('url', '')
    body = parameters.get('body')
    timeout = float(parameters.get('timeout', 30))

    if not url:
        raise NodeError("URL is required", fatal=True)

    headers = {**_parse_headers(parameters.get('headers')), **_auth_headers(context)}

    kwargs: Dict[str, Any] = {'method': method, 'url': url, 'headers': headers}
    if method in ['POST', 'PUT', 'PATCH'] and body not in (None, ''):
        if isinstance(body, (dict, list)):
            kwargs['json'] = body
        else:
            try:
                kwargs['json'] = json.loads(body)
            except json.JSONDecodeError:
                kwargs['content'] = body

    logger.info("[HTTP Request] Executing", node_id=context.node_id, method=method, url=url)

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(**kwargs)
    except httpx.TimeoutException:
        raise NodeError(f"Request timed out after {timeout} seconds")
    except httpx.HTTPError as e:
        raise NodeError(f"Request failed: {e}")

    try:
        response_data = response.json()
    except ValueError:
        response_data = response.text

    result = {
        "status": response.status_code,
        "data": response_data,
        "headers": dict(response.headers),
        "url": str(response.url),
        "method": method,
    }

    if response.status_code >= 400:
        retryable = response.status_code >= 500 or response.status_code == 429
        raise NodeError(f"HTTP {response.status_code} from {url}", fatal=not retryable,
                        details=result)
    return result
