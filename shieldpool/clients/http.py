# clients/http.py
from __future__ import annotations

from typing import Any, Optional

import httpx

from shieldpool.errors import ServiceRejected, TransientServiceError

# Worth another try: rate limiting, request timeout, server side trouble
TRANSIENT_STATUS = {408, 425, 429}


def is_transient_status(status: int) -> bool:
    return status >= 500 or status in TRANSIENT_STATUS


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout: Optional[float] = None,
    what: str = "request",
    **kw: Any,
) -> Any:
    """
    One HTTP call with its own timeout, classified for the retry layer:
    TransientServiceError (timeouts, transport, 5xx/408/429) or
    ServiceRejected (other 4xx, non-JSON body).
    """
    try:
        r = await client.request(method, url, timeout=timeout, **kw)
    except httpx.TimeoutException as e:
        raise TransientServiceError(f"{what} timed out: {e!r}") from e
    except httpx.TransportError as e:
        raise TransientServiceError(f"{what} transport error: {e!r}") from e

    if r.status_code >= 400:
        body = r.text[:500]
        if is_transient_status(r.status_code):
            raise TransientServiceError(f"{what} returned {r.status_code}: {body}", status_code=r.status_code)
        raise ServiceRejected(f"{what} returned {r.status_code}: {body}", status_code=r.status_code)
    try:
        return r.json()
    except ValueError:
        raise ServiceRejected(f"{what} returned non-JSON body: {r.text[:200]!r}", status_code=r.status_code) from None
