import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional, Pattern, Sequence

from rewrite_proxy.errors import RuleValidationError


class RuleMode(str, Enum):
    PREFIX = "prefix"
    SUFFIX = "suffix"
    CONTAINS = "contains"
    REGEX = "regex"


class RuleAction(str, Enum):
    REPLACE = "replace"
    DELETE = "delete"
    DELETE_JSON_FIELD = "delete_json_field"


_VALID_MODES = ", ".join(m.value for m in RuleMode)
_VALID_ACTIONS = ", ".join(a.value for a in RuleAction)


@dataclass(frozen=True)
class Rule:
    """
    One match/transform step applied to request body text.

    Rules are immutable. Toggling ``enabled`` produces a new instance via
    :meth:`with_enabled`; the engine swaps whole rule tuples instead of
    mutating entries that a concurrent ``process`` call may be iterating.

    Attributes:
        name: Identifier used for logs and enable/disable lookups.
        enabled: Disabled rules are skipped entirely by the engine.
        mode: How ``pattern`` is matched against content.
        pattern: Literal text, or a regular expression when ``mode`` is regex.
        action: What happens to matching content.
        value: Substitution text for ``replace``; ignored otherwise.
    """

    name: str
    enabled: bool
    mode: RuleMode
    pattern: str
    action: RuleAction
    value: Optional[str] = None
    compiled: Optional[Pattern[str]] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self):
        object.__setattr__(self, "mode", RuleMode(self.mode))
        object.__setattr__(self, "action", RuleAction(self.action))
        if self.mode is RuleMode.REGEX:
            object.__setattr__(self, "compiled", re.compile(self.pattern))

    def with_enabled(self, enabled: bool) -> "Rule":
        return replace(self, enabled=enabled)

    def describe(self) -> str:
        if self.action is RuleAction.REPLACE:
            action_desc = f"replace with '{self.value}'"
        elif self.action is RuleAction.DELETE_JSON_FIELD:
            action_desc = "delete json object"
        else:
            action_desc = "delete"
        return f"{self.name}: {self.mode.value} '{self.pattern}' -> {action_desc}"


def _as_text(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def rule_from_dict(raw: Mapping[str, Any], index: int) -> Rule:
    """
    Validate a raw rule mapping and build a :class:`Rule` from it.

    ``index`` is the zero-based position of the rule inside the whole rule set
    and is only used to make error messages point at the offending entry.
    """
    position = index + 1
    name = _as_text(raw, "name") or ""
    if not name:
        raise RuleValidationError(position, name, "rule name must not be empty")

    mode = _as_text(raw, "mode") or ""
    if not mode:
        raise RuleValidationError(position, name, "mode must not be empty")
    if mode not in {m.value for m in RuleMode}:
        raise RuleValidationError(
            position,
            name,
            f"invalid mode '{mode}', supported modes: {_VALID_MODES}",
        )

    pattern = _as_text(raw, "pattern") or ""
    if not pattern:
        raise RuleValidationError(position, name, "pattern must not be empty")

    action = _as_text(raw, "action") or ""
    if not action:
        raise RuleValidationError(position, name, "action must not be empty")
    if action not in {a.value for a in RuleAction}:
        raise RuleValidationError(
            position,
            name,
            f"invalid action '{action}', supported actions: {_VALID_ACTIONS}",
        )

    value = _as_text(raw, "value")
    if action == RuleAction.REPLACE.value and value is None:
        raise RuleValidationError(position, name, "replace action requires a value")

    if mode == RuleMode.REGEX.value:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise RuleValidationError(
                position, name, f"invalid regular expression: {exc}"
            ) from exc

    return Rule(
        name=name,
        enabled=bool(raw.get("enabled", False)),
        mode=RuleMode(mode),
        pattern=pattern,
        action=RuleAction(action),
        value=value,
    )


def validate_rules(rules: Sequence[Rule]) -> None:
    """Re-check already constructed rules; raises on the first invalid one."""
    for index, rule in enumerate(rules):
        rule_from_dict(
            {
                "name": rule.name,
                "enabled": rule.enabled,
                "mode": rule.mode,
                "pattern": rule.pattern,
                "action": rule.action,
                "value": rule.value,
            },
            index,
        )
