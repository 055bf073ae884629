import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from rewrite_proxy.errors import ConfigError, ForwardError
from rewrite_proxy.proxy.context import RequestContext
from rewrite_proxy.proxy.load_balancer import RoundRobinBalancer, Target
from rewrite_proxy.telemetry import FORWARD_ERRORS

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Recomputed by the transport for the outbound request
REQUEST_ONLY_SKIPPED = {"content-length", "host"}

MAX_CONNECTIONS = 100
MAX_KEEPALIVE_CONNECTIONS = 10
KEEPALIVE_EXPIRY = 90.0


def _is_hop_by_hop(name: str) -> bool:
    lowered = name.lower()
    return lowered in HOP_BY_HOP_HEADERS or lowered.startswith("proxy-")


def filter_request_headers(headers: Iterable[Tuple[str, str]]) -> HeaderList:
    """Copy inbound headers minus hop-by-hop ones, Content-Length and Host."""
    forwarded: HeaderList = []
    for name, value in headers:
        if _is_hop_by_hop(name) or name.lower() in REQUEST_ONLY_SKIPPED:
            logger.debug("[Forwarder] Skipping request header: %s", name)
            continue
        forwarded.append((name, value))
    return forwarded


def filter_response_headers(headers: Iterable[Tuple[str, str]]) -> HeaderList:
    forwarded: HeaderList = []
    for name, value in headers:
        if _is_hop_by_hop(name):
            logger.debug("[Forwarder] Skipping response header: %s", name)
            continue
        forwarded.append((name, value))
    return forwarded


def build_target_url(target: Target, path: str, query: str = "") -> str:
    if not path.startswith("/"):
        path = "/" + path
    url = f"{target.url}{path}"
    if query:
        url = f"{url}?{query}"
    return url


def build_client(
    timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        transport=transport,
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=MAX_KEEPALIVE_CONNECTIONS,
            keepalive_expiry=KEEPALIVE_EXPIRY,
        ),
        follow_redirects=False,
    )
    # only the forwarded inbound headers go upstream
    client.headers.clear()
    return client


class Forwarder:
    """
    Sends transformed requests upstream and relays the responses.

    One ``httpx.AsyncClient`` is shared by every request and every target, so
    idle connections are pooled process-wide.
    """

    def __init__(
        self,
        targets: Sequence[Target],
        timeout: float = 30.0,
        balancer: Optional[RoundRobinBalancer] = None,
        client: Optional[httpx.AsyncClient] = None,
        health_path: str = "/health",
        strategy: str = "round_robin",
        logger: logging.Logger = logger,
    ):
        if not targets:
            raise ConfigError("no target server URL configured")
        self._targets = list(targets)
        self._balancer = balancer
        self._timeout = timeout
        self._client = client or build_client(timeout)
        self._health_path = health_path
        self._strategy = strategy
        self._logger = logger

        if self.is_multi_target:
            self._logger.info(
                "[Forwarder] Load balancing across %d targets, strategy = %s",
                len(self._balancer),
                strategy,
            )
            for i, target in enumerate(self._balancer.targets, start=1):
                self._logger.info("[Forwarder]   target[%d]: %s", i, target)
        else:
            self._logger.info(
                "[Forwarder] Single target mode, target = %s", self._targets[0]
            )

    @property
    def is_multi_target(self) -> bool:
        return self._balancer is not None

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def target_url(self) -> str:
        """The fixed target, or the first configured target in multi-target mode."""
        return self._targets[0].url

    def _select_target(self) -> Target:
        if self._balancer is not None:
            target = self._balancer.next()
            self._logger.debug("[Forwarder] Load balancer selected %s", target)
            return target
        return self._targets[0]

    async def forward_request(self, ctx: RequestContext, body: bytes) -> httpx.Response:
        """
        Send ``ctx`` upstream with ``body`` in place of the original body.

        The returned response is streamed; the caller owns it and must close
        it, which :meth:`copy_response` does.
        """
        target = self._select_target()
        url = build_target_url(target, ctx.path, ctx.query)
        start = time.perf_counter()

        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.target_url", url)
            span.set_attribute("proxy.method", ctx.method)
            span.set_attribute("proxy.request_id", ctx.correlation_id)

            headers = [
                (name.encode("latin-1"), value.encode("latin-1"))
                for name, value in filter_request_headers(ctx.headers)
            ]
            self._logger.debug(
                "[Forwarder] %s %s (%d headers)", ctx.method, url, len(headers)
            )
            try:
                request = self._client.build_request(
                    ctx.method, url, headers=headers, content=body
                )
                response = await self._client.send(request, stream=True)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                span.set_attribute("proxy.error", type(e).__name__)
                FORWARD_ERRORS.inc()
                raise ForwardError(url, e) from e

            span.set_attribute("proxy.status_code", response.status_code)

        self._logger.debug(
            "[Forwarder] %s %s -> %d in %.1fms",
            ctx.method,
            url,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    def copy_response(self, response: httpx.Response) -> StreamingResponse:
        """
        Relay status, headers and body of an upstream response.

        The body is streamed as raw bytes, so compressed payloads keep their
        Content-Encoding and Content-Length.
        """

        async def body() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_raw():
                    yield chunk
            finally:
                await response.aclose()

        streaming = StreamingResponse(
            body(),
            status_code=response.status_code,
            background=BackgroundTask(response.aclose),
        )
        upstream_headers = (
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.headers.raw
        )
        streaming.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in filter_response_headers(upstream_headers)
        ]
        return streaming

    async def is_healthy(self, timeout: float = 5.0) -> bool:
        """Probe the first target's health path; never raises."""
        url = build_target_url(self._targets[0], self._health_path)
        try:
            response = await asyncio.wait_for(self._client.get(url), timeout=timeout)
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            self._logger.debug("[Forwarder] Health check against %s failed: %s", url, e)
            return False

        healthy = 200 <= response.status_code < 300
        self._logger.debug(
            "[Forwarder] Health check %s: %s (status %d)",
            url,
            "healthy" if healthy else "unhealthy",
            response.status_code,
        )
        return healthy

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "timeout": self._timeout,
            "is_multi_target": self.is_multi_target,
        }
        if self._balancer is not None:
            stats["mode"] = "load_balancing"
            stats["target_count"] = len(self._balancer)
            stats["strategy"] = self._strategy
        else:
            stats["mode"] = "single_target"
            stats["target_url"] = self.target_url()
        return stats

    async def aclose(self) -> None:
        await self._client.aclose()
