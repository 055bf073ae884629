import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rewrite_proxy import telemetry
from rewrite_proxy.config.settings import ProxyConfig
from rewrite_proxy.proxy.forwarder import Forwarder
from rewrite_proxy.proxy.handler import RequestHandler
from rewrite_proxy.proxy.load_balancer import build_balancer, build_targets
from rewrite_proxy.rules.engine import DebugOptions, RuleEngine
from rewrite_proxy.rules.models import Rule
from rewrite_proxy.vars import METRICS_ENABLED, TRACING_ENABLED
from rewrite_proxy.watcher.rules_watcher import RulesWatcher

logger = logging.getLogger("uvicorn.error")


def build_engine(config: ProxyConfig, logger: logging.Logger = logger) -> RuleEngine:
    engine = RuleEngine(
        config.rule_paths(),
        debug=DebugOptions(
            show_original=config.should_show_original(),
            show_modified=config.should_show_modified(),
            show_rule_matches=config.should_show_rule_matches(),
        ),
        logger=logger,
    )
    engine.load_rules()
    return engine


def build_forwarder(config: ProxyConfig, logger: logging.Logger = logger) -> Forwarder:
    targets = build_targets(config.target_urls())
    return Forwarder(
        targets,
        timeout=config.target.timeout,
        balancer=build_balancer(targets, config.target.strategy),
        health_path=config.target.health_check.path,
        strategy=config.target.strategy,
        logger=logger,
    )


class ProxyServer:
    """
    Wires the engine, forwarder and watcher into a FastAPI application.

    Components not passed in are built from ``config``; building the engine
    performs the initial rule load, so invalid rules fail here.
    """

    def __init__(
        self,
        config: ProxyConfig,
        engine: Optional[RuleEngine] = None,
        forwarder: Optional[Forwarder] = None,
        watcher: Optional[RulesWatcher] = None,
        instrument: bool = True,
        logger: logging.Logger = logger,
    ):
        self.config = config
        self._logger = logger
        self.engine = engine or build_engine(config, logger=logger)
        self.forwarder = forwarder or build_forwarder(config, logger=logger)
        if watcher is None and config.rules.auto_reload:
            watcher = RulesWatcher(
                config.rule_paths(),
                self.engine,
                on_reload=telemetry.record_reload_success,
                on_error=telemetry.record_reload_failure,
                logger=logger,
            )
        self.watcher = watcher
        self.handler = RequestHandler(
            self.engine,
            self.forwarder,
            max_body_size=config.server.max_body_size,
            debug=DebugOptions(show_original=config.should_show_original()),
            logger=logger,
        )
        self._instrument = instrument
        self._running = False
        telemetry.record_rules(self.engine.get_rules())

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        if self.watcher is not None and self.config.rules.auto_reload:
            self.watcher.start()
        self._running = True
        self._logger.info("[Proxy] Listening on %s", self.config.address())
        try:
            yield
        finally:
            self._logger.info("[Proxy] Shutting down...")
            self._running = False
            if self.watcher is not None:
                await self.watcher.stop()
            self.engine.stop()
            await self.forwarder.aclose()
            self._logger.info("[Proxy] Stopped")

    def create_app(self) -> FastAPI:
        app = FastAPI(lifespan=self.lifespan)

        if self._instrument and METRICS_ENABLED:
            telemetry.instrument_metrics(app)
        if self._instrument and TRACING_ENABLED:
            telemetry.configure_tracing(app)

        @app.get("/health")
        async def health():
            return JSONResponse(await self.health_check())

        async def proxy(request: Request):
            return await self.handler.handle(request)

        # no method list: every verb, including WebDAV and custom ones, is proxied
        app.add_route("/{path:path}", proxy, include_in_schema=False)

        return app

    async def health_check(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server": "running",
        }

        check = self.config.target.health_check
        if check.enabled:
            healthy = await self.forwarder.is_healthy(check.timeout)
            target_status = "healthy" if healthy else "unhealthy"
            if not healthy:
                health["status"] = "degraded"
        else:
            target_status = "unchecked"
        health["target_server"] = {
            "status": target_status,
            "url": self.forwarder.target_url(),
        }

        if self.engine.get_enabled_rules():
            health["engine"] = "healthy"
        else:
            health["engine"] = "no_rules_enabled"
        return health

    def update_rules(self, rules: Sequence[Rule]) -> None:
        self.engine.update_rules(rules)
        telemetry.record_rules(rules)

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "server": {
                "address": self.config.address(),
                "running": self._running,
                "debug_mode": self.config.debug.enabled,
            },
            "engine": self.engine.stats(),
            "forwarder": self.forwarder.stats(),
        }
        if self.watcher is not None:
            stats["watcher"] = self.watcher.stats()
        return stats

    def run(self) -> None:
        server = uvicorn.Server(
            uvicorn.Config(
                self.create_app(),
                host=self.config.server.host,
                port=self.config.server.port,
                timeout_graceful_shutdown=int(
                    self.config.server.shutdown_grace_period
                ),
                log_config=None,
                access_log=False,
            )
        )
        server.run()
