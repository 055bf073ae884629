from .models import Rule, RuleAction, RuleMode, rule_from_dict, validate_rules
from .matcher import apply, match, match_string

__all__ = [
    "Rule",
    "RuleAction",
    "RuleMode",
    "rule_from_dict",
    "validate_rules",
    "apply",
    "match",
    "match_string",
]
