import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Sequence

from watchfiles import Change, awatch

from rewrite_proxy.config.rules_loader import load_rules_from_paths
from rewrite_proxy.rules.engine import RuleEngine, RuleLoader
from rewrite_proxy.rules.models import Rule

logger = logging.getLogger("uvicorn.error")

DEFAULT_DEBOUNCE = 0.5


class RulesWatcher:
    """
    Reloads the rule set when one of its files changes on disk.

    Parent directories are watched rather than the files themselves, so
    editors that save by renaming a temporary file are still picked up.
    Bursts of events collapse into a single reload once ``debounce`` seconds
    pass without a new event. A failed reload is logged and the engine keeps
    serving its previous rules.
    """

    def __init__(
        self,
        rule_paths: Sequence[str],
        engine: RuleEngine,
        loader: Optional[RuleLoader] = None,
        on_reload: Optional[Callable[[List[Rule]], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        debounce: float = DEFAULT_DEBOUNCE,
        logger: logging.Logger = logger,
    ):
        self._paths = [os.path.abspath(path) for path in rule_paths]
        self._engine = engine
        self._loader = loader or load_rules_from_paths
        self._on_reload = on_reload
        self._on_error = on_error
        self._debounce = debounce
        self._logger = logger

        self._directories: List[str] = []
        for path in self._paths:
            directory = os.path.dirname(path)
            if directory not in self._directories:
                self._directories.append(directory)

        self._stop_event = asyncio.Event()
        self._changed = asyncio.Event()
        self._deadline = 0.0
        self._watch_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._reload_count = 0
        self._last_error: Optional[BaseException] = None

    @property
    def reload_count(self) -> int:
        return self._reload_count

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def running(self) -> bool:
        return self._debounce_task is not None and not self._debounce_task.done()

    def start(self) -> None:
        """Start watching; must be called from a running event loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._debounce_task = asyncio.create_task(self._debounce_loop())

        directories = [d for d in self._directories if os.path.isdir(d)]
        for directory in self._directories:
            if directory not in directories:
                self._logger.warning(
                    "[Watcher] Directory %s does not exist, not watching it", directory
                )
        if directories:
            self._watch_task = asyncio.create_task(self._watch_loop(directories))
        self._logger.info("[Watcher] Watching rule files: %s", ", ".join(self._paths))

    async def stop(self) -> None:
        if self._debounce_task is None and self._watch_task is None:
            return
        self._stop_event.set()
        for task in (self._watch_task, self._debounce_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._watch_task, self._debounce_task):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        self._debounce_task = None
        self._changed.clear()
        self._logger.info("[Watcher] Stopped")

    def _is_rule_file(self, _change: Change, path: str) -> bool:
        return os.path.abspath(path) in self._paths

    async def _watch_loop(self, directories: List[str]) -> None:
        try:
            async for changes in awatch(
                *directories,
                watch_filter=self._is_rule_file,
                stop_event=self._stop_event,
                recursive=False,
                debounce=100,
                step=50,
            ):
                for change, path in changes:
                    self._logger.debug(
                        "[Watcher] %s: %s", change.name.lower(), path
                    )
                self.notify_change()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error("[Watcher] File watching failed: %s", e)

    def notify_change(self) -> None:
        """Schedule a reload ``debounce`` seconds from now, replacing a pending one."""
        self._deadline = asyncio.get_running_loop().time() + self._debounce
        self._changed.set()

    async def _debounce_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await self._changed.wait()
            self._changed.clear()
            while True:
                remaining = self._deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)
            self._changed.clear()
            await self._reload()

    def _load_and_apply(self) -> List[Rule]:
        rules = self._loader(self._paths)
        self._engine.update_rules(rules)
        return rules

    async def _reload(self) -> None:
        self._logger.info("[Watcher] Rule files changed, reloading")
        try:
            rules = await asyncio.to_thread(self._load_and_apply)
        except Exception as e:
            self._last_error = e
            self._logger.error(
                "[Watcher] Reload failed, keeping previous rules: %s", e
            )
            self._notify(self._on_error, e)
            return

        self._reload_count += 1
        self._last_error = None
        self._logger.info("[Watcher] Reloaded %d rules", len(rules))
        self._notify(self._on_reload, rules)

    def _notify(self, callback: Optional[Callable[[Any], None]], arg: Any) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception as e:
            self._logger.error("[Watcher] Reload callback failed: %s", e)

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "files": list(self._paths),
            "directories": list(self._directories),
            "reload_count": self._reload_count,
            "last_error": str(self._last_error) if self._last_error else None,
        }
