"""Outbound HTTP helper shared by the language model and gateway clients."""

import logging
from typing import Any, Optional

import httpx

from replyhub.errors import ExternalServiceError, ProtocolError

logger = logging.getLogger(__name__)

# Truncate remote bodies kept in errors and logs
MAX_BODY_CHARS = 500


async def request_json(
    method: str,
    url: str,
    service: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
    **kwargs: Any,
) -> dict:
    """
    Perform a request and decode its JSON object body.

    Uses the given client, otherwise a short-lived one with timeout.

    Raises:
        ExternalServiceError: transport failure or non-2xx status
        ProtocolError: body is not a JSON object
    """
    try:
        if client is not None:
            response = await client.request(method, url, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise ExternalServiceError(f"{service} request failed: {e}")

    logger.debug(f"{service} responded {response.status_code} for {method} {url}")

    if not response.is_success:
        body = response.text[:MAX_BODY_CHARS]
        raise ExternalServiceError(
            f"{service} error: {response.status_code} - {body}",
            status_code=response.status_code,
            body=body,
        )

    try:
        data = response.json()
    except ValueError:
        raise ProtocolError(f"{service} returned a non-JSON body: {response.text[:MAX_BODY_CHARS]}")

    if not isinstance(data, dict):
        raise ProtocolError(f"{service} returned {type(data).__name__}, expected an object")
    return data
