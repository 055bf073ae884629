import logging
from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Gauge, Info
from prometheus_fastapi_instrumentator import Instrumentator

from rewrite_proxy.rules.models import Rule
from rewrite_proxy.vars import (
    METRICS_PATH,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")

RULES_TOTAL = Gauge("rewrite_proxy_rules_total", "Rules in the active rule set")
RULES_ENABLED = Gauge(
    "rewrite_proxy_rules_enabled", "Enabled rules in the active rule set"
)
RULE_RELOADS = Counter(
    "rewrite_proxy_rule_reloads_total", "Rule reload attempts", ["result"]
)
FORWARD_ERRORS = Counter(
    "rewrite_proxy_forward_errors_total", "Requests that could not reach upstream"
)
APP_INFO = Info("rewrite_proxy_app", "Application Info")

_tracing_configured = False


def record_rules(rules: Sequence[Rule]) -> None:
    RULES_TOTAL.set(len(rules))
    RULES_ENABLED.set(sum(1 for rule in rules if rule.enabled))


def record_reload_success(rules: Sequence[Rule]) -> None:
    RULE_RELOADS.labels(result="success").inc()
    record_rules(rules)


def record_reload_failure(_exc: BaseException) -> None:
    RULE_RELOADS.labels(result="failure").inc()


def instrument_metrics(app: FastAPI, endpoint: str = METRICS_PATH) -> None:
    Instrumentator(excluded_handlers=[endpoint]).instrument(app).expose(
        app, endpoint=endpoint, include_in_schema=False
    )
    APP_INFO.info({"app_name": SERVICE_NAME})


def configure_tracing(app: FastAPI) -> None:
    """Install the tracer provider once per process and instrument ``app``."""
    global _tracing_configured
    if not _tracing_configured:
        trace.set_tracer_provider(
            TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
        )
        if OTLP_ENDPOINT:
            exporter = OTLPSpanExporter(
                endpoint=OTLP_ENDPOINT,
                headers=(
                    dict(
                        header.split("=", 1)
                        for header in OTLP_HEADERS.split(",")
                        if "=" in header
                    )
                    if OTLP_HEADERS
                    else None
                ),
            )
            trace.get_tracer_provider().add_span_processor(BatchSpanProcessor(exporter))
            logger.info("[Telemetry] Exporting traces to %s", OTLP_ENDPOINT)
        _tracing_configured = True

    FastAPIInstrumentor.instrument_app(
        app, excluded_urls=f"health,{METRICS_PATH.lstrip('/')}"
    )
