"""
Rule file loading.

A rule file is YAML in one of two shapes, which may be mixed in one file:

Standard form::

    rules:
      - name: strip-token
        enabled: true
        mode: contains
        pattern: "secret"
        action: delete

Easy form, either at the top level or under ``easy:``::

    delete:
      contains: ["foo", "bar"]
    replace:
      prefix: {"old": "new"}
    regex:
      delete: ["\\d{16}"]

Easy entries are expanded into standard rules with synthesized names before
anything reaches the engine. Inside ``easy.delete.contains``, an entry ending
in ``.yaml`` or ``.yml`` names another easy-form file to include.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from rewrite_proxy.errors import RuleLoadError
from rewrite_proxy.rules.models import Rule, RuleAction, RuleMode, rule_from_dict

logger = logging.getLogger("uvicorn.error")

_EXTERNAL_SUFFIXES = (".yaml", ".yml")
_EASY_KEYS = ("delete", "replace", "prefix", "suffix", "regex")


class _Model(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)


class StandardRule(_Model):
    name: Optional[str] = None
    enabled: bool = False
    mode: Optional[str] = None
    pattern: Optional[str] = None
    action: Optional[str] = None
    value: Optional[str] = None


class EasyDeleteRules(_Model):
    contains: List[str] = []
    prefix: List[str] = []
    suffix: List[str] = []
    regex: List[str] = []


class EasyReplaceRules(_Model):
    contains: Dict[str, str] = {}
    prefix: Dict[str, str] = {}
    suffix: Dict[str, str] = {}
    regex: Dict[str, str] = {}


class EasyModeRules(_Model):
    delete: List[str] = []
    replace: Dict[str, str] = {}


class EasyRules(_Model):
    delete: Optional[EasyDeleteRules] = None
    replace: Optional[EasyReplaceRules] = None
    prefix: Optional[EasyModeRules] = None
    suffix: Optional[EasyModeRules] = None
    regex: Optional[EasyModeRules] = None

    def is_empty(self) -> bool:
        return not any(
            section is not None and any(section.model_dump().values())
            for section in (
                self.delete,
                self.replace,
                self.prefix,
                self.suffix,
                self.regex,
            )
        )


class RulesFile(_Model):
    rules: List[StandardRule] = []
    easy: Optional[EasyRules] = None


def _short(pattern: str, size: int) -> str:
    return pattern[:size]


def _raw(name: str, mode: RuleMode, pattern: str, action: RuleAction, value=None):
    return {
        "name": name,
        "enabled": True,
        "mode": mode.value,
        "pattern": pattern,
        "action": action.value,
        "value": value,
    }


def convert_easy_rules(
    easy: EasyRules, external_base: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Expand easy-form sections into raw standard rules.

    The order is fixed: delete, replace, prefix, suffix, regex. Within a
    section, delete lists keep their order and replace maps keep document
    order. When ``external_base`` is given, ``.yaml``/``.yml`` entries in
    ``delete.contains`` are loaded relative to it instead of becoming rules.
    """
    rules: List[Dict[str, Any]] = []

    if easy.delete is not None:
        contains = list(easy.delete.contains)
        if external_base is not None:
            literal: List[str] = []
            for entry in contains:
                if entry.endswith(_EXTERNAL_SUFFIXES):
                    rules.extend(_load_external_easy_file(entry, external_base))
                else:
                    literal.append(entry)
            contains = literal
        for mode, patterns in (
            (RuleMode.CONTAINS, contains),
            (RuleMode.PREFIX, easy.delete.prefix),
            (RuleMode.SUFFIX, easy.delete.suffix),
            (RuleMode.REGEX, easy.delete.regex),
        ):
            for i, pattern in enumerate(patterns, start=1):
                rules.append(
                    _raw(
                        f"bulk-delete-{mode.value}-{i}",
                        mode,
                        pattern,
                        RuleAction.DELETE,
                    )
                )

    if easy.replace is not None:
        for mode, mapping in (
            (RuleMode.CONTAINS, easy.replace.contains),
            (RuleMode.PREFIX, easy.replace.prefix),
            (RuleMode.SUFFIX, easy.replace.suffix),
            (RuleMode.REGEX, easy.replace.regex),
        ):
            for pattern, value in mapping.items():
                rules.append(
                    _raw(
                        f"bulk-replace-{mode.value}-{_short(pattern, 10)}",
                        mode,
                        pattern,
                        RuleAction.REPLACE,
                        value,
                    )
                )

    for mode, section in (
        (RuleMode.PREFIX, easy.prefix),
        (RuleMode.SUFFIX, easy.suffix),
        (RuleMode.REGEX, easy.regex),
    ):
        if section is None:
            continue
        for i, pattern in enumerate(section.delete, start=1):
            rules.append(
                _raw(f"{mode.value}-delete-{i}", mode, pattern, RuleAction.DELETE)
            )
        for pattern, value in section.replace.items():
            rules.append(
                _raw(
                    f"{mode.value}-replace-{_short(pattern, 10)}",
                    mode,
                    pattern,
                    RuleAction.REPLACE,
                    value,
                )
            )

    return rules


def _read_yaml(path: str) -> Any:
    if not os.path.exists(path):
        raise RuleLoadError(path, "file does not exist")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RuleLoadError(path, f"invalid YAML: {e}") from e
    except OSError as e:
        raise RuleLoadError(path, str(e)) from e


def _load_external_easy_file(ref: str, base_dir: str) -> List[Dict[str, Any]]:
    path = ref if os.path.isabs(ref) else os.path.join(base_dir, ref)
    data = _read_yaml(path)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise RuleLoadError(path, "easy rules file must be a mapping")
    try:
        easy = EasyRules.model_validate(data)
    except ValidationError as e:
        raise RuleLoadError(path, f"invalid easy rules: {e}") from e
    logger.debug("[Config] Included easy rules file %s", path)
    return convert_easy_rules(easy)


def load_raw_rules(path: str) -> List[Dict[str, Any]]:
    """Parse one rule file into raw rule mappings, without validating them."""
    data = _read_yaml(path)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise RuleLoadError(path, "rules file must be a mapping")

    base_dir = os.path.dirname(os.path.abspath(path))
    try:
        rules_file = RulesFile.model_validate(data)
        top_level_easy = EasyRules.model_validate(
            {key: data[key] for key in _EASY_KEYS if key in data}
        )
    except ValidationError as e:
        raise RuleLoadError(path, f"invalid rules file: {e}") from e

    raw_rules: List[Dict[str, Any]] = [
        rule.model_dump() for rule in rules_file.rules
    ]
    if rules_file.easy is not None:
        raw_rules.extend(convert_easy_rules(rules_file.easy, external_base=base_dir))
    if not top_level_easy.is_empty():
        raw_rules.extend(convert_easy_rules(top_level_easy, external_base=base_dir))
    return raw_rules


def load_rules_from_paths(paths: Sequence[str]) -> List[Rule]:
    """
    Load every rule file in order and validate the concatenation as one set.

    Raises :class:`RuleLoadError` or :class:`RuleValidationError`; nothing is
    returned unless every rule in every file is valid.
    """
    raw_rules: List[Dict[str, Any]] = []
    for path in paths:
        raw_rules.extend(load_raw_rules(path))
    return [rule_from_dict(raw, index) for index, raw in enumerate(raw_rules)]


def load_rules(path: str) -> List[Rule]:
    return load_rules_from_paths([path])
