"""HTTP reverse proxy that rewrites request bodies with hot-reloadable rules."""

__version__ = "1.0.0"
