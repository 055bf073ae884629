import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence
from urllib.parse import urlparse, urlunparse

from rewrite_proxy.config.settings import DEFAULT_STRATEGY
from rewrite_proxy.errors import ConfigError, UnsupportedStrategyError


@dataclass(frozen=True)
class Target:
    """Upstream base URL: scheme and host only, no trailing slash."""

    url: str

    @classmethod
    def parse(cls, raw: str) -> "Target":
        parsed = urlparse(raw.strip())
        if not parsed.scheme:
            raise ConfigError(f"target URL is missing a scheme (http/https): {raw}")
        if not parsed.netloc:
            raise ConfigError(f"target URL is missing a host: {raw}")
        return cls(urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")))

    def __str__(self) -> str:
        return self.url


class RoundRobinBalancer:
    def __init__(self, targets: Sequence[Target]):
        if not targets:
            raise ConfigError("load balancer requires at least one target")
        self._targets = tuple(targets)
        self._index = 0
        self._lock = threading.Lock()

    @property
    def targets(self) -> List[Target]:
        return list(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    def next(self) -> Target:
        with self._lock:
            target = self._targets[self._index]
            self._index = (self._index + 1) % len(self._targets)
        return target


def build_targets(urls: Sequence[str]) -> List[Target]:
    return [Target.parse(url) for url in urls]


def build_balancer(
    targets: Sequence[Target], strategy: str = DEFAULT_STRATEGY
) -> Optional[RoundRobinBalancer]:
    """
    Return a balancer for multi-target setups.

    With fewer than two targets there is nothing to balance and ``None`` is
    returned; the caller uses its single fixed target directly.
    """
    if (strategy or DEFAULT_STRATEGY) != DEFAULT_STRATEGY:
        raise UnsupportedStrategyError(strategy)
    if len(targets) < 2:
        return None
    return RoundRobinBalancer(targets)
