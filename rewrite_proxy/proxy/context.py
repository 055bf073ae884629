import secrets
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from starlette.requests import Request


def generate_request_id() -> str:
    """Random correlation id; falls back to a timestamp if randomness fails."""
    try:
        return secrets.token_hex(8)
    except (NotImplementedError, OSError):
        return f"req_{time.time_ns()}"


@dataclass
class RequestContext:
    """
    Per-request state carried from the handler to the forwarder.

    ``headers`` keeps the inbound order and repeated names as ``(name, value)``
    pairs; lookups through :meth:`header` are case-insensitive.
    """

    correlation_id: str
    method: str
    path: str
    query: str = ""
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_request(cls, request: Request, correlation_id: str) -> "RequestContext":
        raw_path = request.scope.get("raw_path")
        path = raw_path.decode("latin-1") if raw_path else request.url.path
        return cls(
            correlation_id=correlation_id,
            method=request.method,
            path=path,
            query=request.url.query,
            headers=[
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in request.headers.raw
            ],
        )

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def header_values(self, name: str) -> List[str]:
        lowered = name.lower()
        return [value for key, value in self.headers if key.lower() == lowered]
