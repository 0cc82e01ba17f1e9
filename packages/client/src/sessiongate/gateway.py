"""Request gateway — every outbound API call goes through here.

Learn: the gateway does three things to each request:
1. Attaches the current access credential (Authorization: Bearer ...) and
   an X-Request-ID, bound into structlog's contextvars so every log line
   for the call carries it.
2. Sends it. Anything that isn't a 401 comes straight back, 403 and 5xx
   included. Transport errors propagate unchanged.
3. On a 401, asks the RefreshCoordinator for a usable credential, rebuilds
   the request with it, and sends it exactly once more. Whatever that
   second response is, the caller gets it.

The retry budget is the `attempt` argument, threaded through explicitly.
Requests are never mutated to remember that they were retried; the retry
is a fresh copy with a new Authorization header.
"""

import uuid
from typing import Optional

import httpx
import structlog

from sessiongate.coordinator import FailedRequest, RefreshCoordinator
from sessiongate.state import SessionState

logger = structlog.get_logger()

MAX_AUTH_RETRIES = 1


class RequestGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        state: SessionState,
        coordinator: RefreshCoordinator,
    ):
        self.client = client
        self.state = state
        self.coordinator = coordinator
        self.dispatch_count = 0

    async def execute(
        self,
        request: httpx.Request,
        *,
        attempt: int = 0,
        authenticate: bool = True,
    ) -> httpx.Response:
        """Send a request with session handling.

        Raises Unauthenticated, SessionExpired or RefreshTransientFailure
        when a 401 cannot be recovered. Never returns the first 401 of an
        authenticated request.
        """
        await request.aread()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        credential = self.state.read().access_credential if authenticate else None
        outgoing = _prepare(request, credential, request_id)

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await self._send(outgoing)

            if (
                response.status_code != 401
                or not authenticate
                or attempt >= MAX_AUTH_RETRIES
            ):
                return response

            logger.info(
                "gateway.unauthorized",
                method=request.method,
                url=str(request.url.copy_with(query=None)),
                attempt=attempt,
            )
            await response.aclose()

            new_credential = await self.coordinator.ensure_valid_credential(
                FailedRequest(request=outgoing, credential=credential)
            )
            retry = _prepare(request, new_credential, request_id)
            response = await self._send(retry)
            logger.info("gateway.retried", status=response.status_code)
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

    async def _send(self, request: httpx.Request) -> httpx.Response:
        self.dispatch_count += 1
        return await self.client.send(request)

    # ─── Convenience ──────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        authenticate: bool = True,
        **kwargs,
    ) -> httpx.Response:
        request = self.client.build_request(method, url, **kwargs)
        return await self.execute(request, authenticate=authenticate)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)


def _prepare(
    request: httpx.Request,
    credential: Optional[str],
    request_id: str,
) -> httpx.Request:
    """Copy the request with auth and tracing headers. The original is left alone."""
    headers = httpx.Headers(request.headers)
    headers["X-Request-ID"] = request_id
    if credential:
        headers["Authorization"] = f"Bearer {credential}"
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=request.content,
        extensions=dict(request.extensions),
    )
