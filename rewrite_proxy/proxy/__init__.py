from .context import RequestContext
from .forwarder import Forwarder
from .handler import RequestHandler
from .load_balancer import RoundRobinBalancer, Target
from .server import ProxyServer

__all__ = [
    "RequestContext",
    "Forwarder",
    "RequestHandler",
    "RoundRobinBalancer",
    "Target",
    "ProxyServer",
]
