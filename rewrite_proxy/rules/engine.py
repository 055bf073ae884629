import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from rewrite_proxy.config.rules_loader import load_rules_from_paths
from rewrite_proxy.errors import RuleEngineStoppedError, RuleNotFoundError
from rewrite_proxy.rules import matcher
from rewrite_proxy.rules.models import Rule

logger = logging.getLogger("uvicorn.error")

RuleLoader = Callable[[Sequence[str]], List[Rule]]

MAX_LOGGED_BODY = 1000


@dataclass
class DebugOptions:
    show_original: bool = False
    show_modified: bool = False
    show_rule_matches: bool = False


class ReadWriteLock:
    """
    Many concurrent readers or one writer.

    Writers are preferred: once a writer is waiting, new readers queue behind
    it so a steady stream of ``process`` calls cannot starve a reload.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _truncate(text: str) -> str:
    if len(text) <= MAX_LOGGED_BODY:
        return text
    return text[:MAX_LOGGED_BODY] + "..."


class RuleEngine:
    """
    Holds the active ordered rule set and applies it to request bodies.

    ``process`` snapshots the rule tuple under the read lock and applies the
    rules after releasing it, so a reload never waits on a slow body and a
    body never observes half of a reload.
    """

    def __init__(
        self,
        rule_paths: Sequence[str] = (),
        loader: Optional[RuleLoader] = None,
        debug: Optional[DebugOptions] = None,
        logger: logging.Logger = logger,
    ):
        self._rule_paths = list(rule_paths)
        self._loader = loader or load_rules_from_paths
        self._debug = debug or DebugOptions()
        self._logger = logger
        self._lock = ReadWriteLock()
        self._rules: Tuple[Rule, ...] = ()
        self._stopped = threading.Event()

    @property
    def rule_paths(self) -> List[str]:
        return list(self._rule_paths)

    def load_rules(self) -> List[Rule]:
        """
        Load and validate every configured rule file as one set.

        On failure the exception propagates and the active rules are left as
        they were.
        """
        rules = self._loader(self._rule_paths)
        self.update_rules(rules)
        self._logger.info("[Engine] Loaded %d rules", len(rules))
        for rule in rules:
            self._logger.debug("[Engine] Rule: %s", rule.describe())
        return list(rules)

    def reload_rules(self) -> List[Rule]:
        self._logger.info("[Engine] Reloading rules...")
        return self.load_rules()

    def update_rules(self, rules: Sequence[Rule]) -> None:
        new_rules = tuple(rules)
        with self._lock.write_lock():
            self._rules = new_rules
        self._logger.info("[Engine] Rule set replaced, %d rules active", len(new_rules))

    def _snapshot(self) -> Tuple[Rule, ...]:
        with self._lock.read_lock():
            return self._rules

    def process(self, content: str) -> str:
        if self._stopped.is_set():
            raise RuleEngineStoppedError()

        rules = self._snapshot()
        if not rules:
            self._logger.debug("[Engine] No rules configured, content unchanged")
            return content

        if self._debug.show_original:
            self._logger.debug("[Engine] Original content: %s", _truncate(content))

        modified = content
        for rule in rules:
            if not rule.enabled:
                self._logger.debug("[Engine] Rule %s disabled, skipped", rule.name)
                continue

            before = modified
            modified = matcher.apply(rule, modified)
            if self._debug.show_rule_matches:
                self._logger.debug(
                    "[Engine] Rule %s (%s '%s' -> %s) %s",
                    rule.name,
                    rule.mode.value,
                    rule.pattern,
                    rule.action.value,
                    "applied" if before != modified else "no change",
                )

            if self._stopped.is_set():
                raise RuleEngineStoppedError()

        if modified != content:
            self._logger.debug(
                "[Engine] Content replaced, length %d -> %d",
                len(content),
                len(modified),
            )
            if self._debug.show_modified:
                self._logger.debug("[Engine] Modified content: %s", _truncate(modified))
        return modified

    def process_bytes(self, body: bytes) -> bytes:
        """
        Apply the rules to a raw body.

        Bytes that are not valid UTF-8 are carried through with
        ``surrogateescape`` so untouched regions are written back unchanged.
        """
        text = body.decode("utf-8", errors="surrogateescape")
        return self.process(text).encode("utf-8", errors="surrogateescape")

    def get_rules(self) -> List[Rule]:
        return list(self._snapshot())

    def get_enabled_rules(self) -> List[Rule]:
        return [rule for rule in self._snapshot() if rule.enabled]

    def get_rule_by_name(self, name: str) -> Optional[Rule]:
        for rule in self._snapshot():
            if rule.name == name:
                return rule
        return None

    def _set_enabled(self, name: str, enabled: bool) -> None:
        with self._lock.write_lock():
            rules = list(self._rules)
            for index, rule in enumerate(rules):
                if rule.name == name:
                    rules[index] = rule.with_enabled(enabled)
                    self._rules = tuple(rules)
                    break
            else:
                raise RuleNotFoundError(name)
        self._logger.info(
            "[Engine] Rule %s %s", name, "enabled" if enabled else "disabled"
        )

    def enable_rule(self, name: str) -> None:
        self._set_enabled(name, True)

    def disable_rule(self, name: str) -> None:
        self._set_enabled(name, False)

    def stats(self) -> Dict[str, int]:
        rules = self._snapshot()
        enabled = sum(1 for rule in rules if rule.enabled)
        return {
            "total_rules": len(rules),
            "enabled_rules": enabled,
            "disabled_rules": len(rules) - enabled,
        }

    def stop(self) -> None:
        self._stopped.set()
        self._logger.info("[Engine] Rule engine stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()
