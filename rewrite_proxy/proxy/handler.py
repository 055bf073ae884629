import logging
import time
from typing import Optional

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from rewrite_proxy.errors import ForwardError
from rewrite_proxy.proxy.context import RequestContext, generate_request_id
from rewrite_proxy.proxy.forwarder import Forwarder
from rewrite_proxy.rules.engine import DebugOptions, RuleEngine

logger = logging.getLogger("uvicorn.error")

REQUEST_ID_HEADER = "X-Request-ID"


class BodyTooLargeError(Exception):
    def __init__(self, limit: int):
        super().__init__(f"request body exceeds {limit} bytes")
        self.limit = limit


async def read_body(request: Request, max_body_size: int = 0) -> bytes:
    """
    Buffer the request body, stopping as soon as ``max_body_size`` is passed.

    A limit of 0 disables the check.
    """
    if max_body_size:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_body_size:
            raise BodyTooLargeError(max_body_size)

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if max_body_size and size > max_body_size:
            raise BodyTooLargeError(max_body_size)
        chunks.append(chunk)
    return b"".join(chunks)


def _error(status_code: int, message: str, request_id: str) -> Response:
    return PlainTextResponse(
        message, status_code=status_code, headers={REQUEST_ID_HEADER: request_id}
    )


class RequestHandler:
    """
    Per-request pipeline: buffer, transform, forward, relay.

    Failures never leave this class as exceptions; each one maps to a short
    plain-text response carrying the request id.
    """

    def __init__(
        self,
        engine: RuleEngine,
        forwarder: Forwarder,
        max_body_size: int = 0,
        debug: Optional[DebugOptions] = None,
        logger: logging.Logger = logger,
    ):
        self._engine = engine
        self._forwarder = forwarder
        self._max_body_size = max_body_size
        self._debug = debug or DebugOptions()
        self._logger = logger

    async def handle(self, request: Request) -> Response:
        request_id = generate_request_id()
        ctx = RequestContext.from_request(request, request_id)
        start = time.perf_counter()
        self._logger.info(
            "[Proxy] [%s] %s %s started", request_id, ctx.method, ctx.path
        )
        if self._debug.show_original:
            self._logger.debug(
                "[Proxy] [%s] Request headers: %s",
                request_id,
                dict(ctx.headers),
            )

        response = await self._handle(request, ctx)

        self._logger.info(
            "[Proxy] [%s] %s %s completed in %.1fms, status = %d",
            request_id,
            ctx.method,
            ctx.path,
            (time.perf_counter() - start) * 1000,
            response.status_code,
        )
        return response

    async def _handle(self, request: Request, ctx: RequestContext) -> Response:
        request_id = ctx.correlation_id
        try:
            ctx.body = await read_body(request, self._max_body_size)
        except BodyTooLargeError as e:
            self._logger.warning("[Proxy] [%s] %s", request_id, e)
            return _error(413, "Request body too large", request_id)

        body = await self._transform(ctx)
        if body is None:
            return _error(500, "Content replacement failed", request_id)

        try:
            upstream = await self._forwarder.forward_request(ctx, body)
        except ForwardError as e:
            self._logger.error("[Proxy] [%s] %s", request_id, e)
            return _error(502, "Bad gateway", request_id)

        response = self._forwarder.copy_response(upstream)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    async def _transform(self, ctx: RequestContext) -> Optional[bytes]:
        if not ctx.body:
            return ctx.body
        try:
            modified = await run_in_threadpool(self._engine.process_bytes, ctx.body)
        except Exception as e:
            self._logger.error(
                "[Proxy] [%s] Content replacement failed: %s", ctx.correlation_id, e
            )
            return None
        if modified != ctx.body:
            self._logger.debug(
                "[Proxy] [%s] Body rewritten, %d -> %d bytes",
                ctx.correlation_id,
                len(ctx.body),
                len(modified),
            )
        return modified
