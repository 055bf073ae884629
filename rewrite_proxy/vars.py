import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "rewrite-proxy")
CONFIG_PATH = os.getenv("CONFIG_PATH", "configs/config.yaml")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
TRACING_ENABLED = os.getenv("TRACING_ENABLED", "true").lower() == "true"

# served by the proxy itself, so this path is never forwarded upstream
METRICS_PATH = os.getenv("METRICS_PATH", "/metrics")
