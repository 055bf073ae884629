"""
Match and transform semantics for a single rule.

Everything here is a pure function of ``(rule, content)``; no state is shared
between calls, so the engine can run them from any number of threads.
"""

import json
from typing import Dict, List, NamedTuple, Union

from rewrite_proxy.rules.models import Rule, RuleAction, RuleMode

JsonValue = Union[
    None, bool, int, float, str, Dict[str, "JsonValue"], List["JsonValue"]
]

JSON_INDENT = 2


class VisitResult(NamedTuple):
    node: JsonValue
    delete_self: bool


def match_string(rule: Rule, text: str) -> bool:
    """Test ``text`` against the rule pattern, ignoring ``enabled``."""
    if rule.mode is RuleMode.CONTAINS:
        return rule.pattern in text
    if rule.mode is RuleMode.PREFIX:
        return text.startswith(rule.pattern)
    if rule.mode is RuleMode.SUFFIX:
        return text.endswith(rule.pattern)
    if rule.mode is RuleMode.REGEX:
        return rule.compiled.search(text) is not None
    return False


def match(rule: Rule, content: str) -> bool:
    if not rule.enabled:
        return False
    return match_string(rule, content)


def apply(rule: Rule, content: str) -> str:
    if rule.action is RuleAction.DELETE_JSON_FIELD:
        return delete_json_field(rule, content)

    if not match(rule, content):
        return content

    if rule.action is RuleAction.DELETE:
        return _substitute(rule, content, "")
    if rule.action is RuleAction.REPLACE:
        return _substitute(rule, content, rule.value or "")
    return content


def _substitute(rule: Rule, content: str, value: str) -> str:
    pattern = rule.pattern
    if rule.mode is RuleMode.PREFIX:
        if content.startswith(pattern):
            return value + content[len(pattern):]
        return content
    if rule.mode is RuleMode.SUFFIX:
        if content.endswith(pattern):
            return content[: len(content) - len(pattern)] + value
        return content
    if rule.mode is RuleMode.CONTAINS:
        return content.replace(pattern, value)
    if rule.mode is RuleMode.REGEX:
        # value is literal text, group references are not expanded
        return rule.compiled.sub(lambda _m: value, content)
    return content


def _looks_like_json(content: str) -> bool:
    stripped = content.strip()
    return (stripped.startswith("{") and stripped.endswith("}")) or (
        stripped.startswith("[") and stripped.endswith("]")
    )


def delete_json_field(rule: Rule, content: str) -> str:
    """
    Remove every JSON object that has a direct string member matching the rule.

    The match deletes the object holding the string, not the string itself and
    not any array around it. Input that is not a JSON object or array, or that
    nests too deeply to walk, is returned untouched.
    """
    if not rule.enabled or not _looks_like_json(content):
        return content

    try:
        data = json.loads(content)
        result = visit(rule, data)
        node = None if result.delete_self else result.node
        text = json.dumps(node, indent=JSON_INDENT, ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        return content

    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        # lone surrogates from \uXXXX escapes only survive as escapes
        text = json.dumps(node, indent=JSON_INDENT, ensure_ascii=True)
    return text


def visit(rule: Rule, node: JsonValue) -> VisitResult:
    if isinstance(node, dict):
        for value in node.values():
            if isinstance(value, str) and match_string(rule, value):
                return VisitResult(None, True)

        rebuilt: Dict[str, JsonValue] = {}
        for key, value in node.items():
            child = visit(rule, value)
            if not child.delete_self:
                rebuilt[key] = child.node
        return VisitResult(rebuilt, False)

    if isinstance(node, list):
        items: List[JsonValue] = []
        for item in node:
            child = visit(rule, item)
            if not child.delete_self:
                items.append(child.node)
        return VisitResult(items, False)

    return VisitResult(node, False)
