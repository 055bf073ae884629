from .settings import ProxyConfig, load_config, parse_duration
from .rules_loader import load_rules, load_rules_from_paths

__all__ = [
    "ProxyConfig",
    "load_config",
    "parse_duration",
    "load_rules",
    "load_rules_from_paths",
]
