"""
Tests for single-rule matching and transformation.

Covers:
- Match semantics per mode, including disabled rules
- delete/replace per mode
- JSON-aware object deletion on objects, arrays and non-JSON input
"""

import json

import pytest

from rewrite_proxy.rules.matcher import (
    apply,
    delete_json_field,
    match,
    match_string,
    visit,
)


class TestMatch:
    @pytest.mark.parametrize(
        "mode,pattern,content,expected",
        [
            ("contains", "cat", "concatenate", True),
            ("contains", "dog", "concatenate", False),
            ("prefix", "con", "concatenate", True),
            ("prefix", "cat", "concatenate", False),
            ("suffix", "nate", "concatenate", True),
            ("suffix", "con", "concatenate", False),
            ("regex", r"t\w+e$", "concatenate", True),
            ("regex", r"^\d+$", "concatenate", False),
        ],
    )
    def test_modes(self, make_rule, mode, pattern, content, expected):
        rule = make_rule(pattern=pattern, mode=mode)
        assert match(rule, content) is expected

    def test_regex_search_is_unanchored(self, make_rule):
        rule = make_rule(pattern=r"\d{3}", mode="regex")
        assert match(rule, "id=123;")

    def test_disabled_rule_never_matches(self, make_rule):
        rule = make_rule(pattern="a", enabled=False)
        assert match(rule, "aaa") is False

    def test_match_string_ignores_enabled(self, make_rule):
        rule = make_rule(pattern="a", enabled=False)
        assert match_string(rule, "aaa") is True


class TestApply:
    def test_delete_prefix(self, make_rule):
        rule = make_rule(pattern="DEBUG:", mode="prefix")
        assert apply(rule, "DEBUG:DEBUG:msg") == "DEBUG:msg"

    def test_delete_suffix(self, make_rule):
        rule = make_rule(pattern="!!", mode="suffix")
        assert apply(rule, "hi!!!!") == "hi!!"

    def test_delete_contains_removes_all(self, make_rule):
        rule = make_rule(pattern="x", mode="contains")
        assert apply(rule, "axbxcx") == "abc"

    def test_delete_regex_removes_all(self, make_rule):
        rule = make_rule(pattern=r"\d+", mode="regex")
        assert apply(rule, "a1b22c333") == "abc"

    def test_replace_prefix_only_boundary(self, make_rule):
        rule = make_rule(pattern="ab", mode="prefix", action="replace", value="X")
        assert apply(rule, "abab") == "Xab"

    def test_replace_suffix_only_boundary(self, make_rule):
        rule = make_rule(pattern="ab", mode="suffix", action="replace", value="X")
        assert apply(rule, "abab") == "abX"

    def test_replace_contains_all(self, make_rule):
        rule = make_rule(pattern="old", action="replace", value="new")
        assert apply(rule, "old old gold") == "new new gnew"

    def test_replace_regex_all(self, make_rule):
        rule = make_rule(
            pattern=r"sk-[a-z0-9]+", mode="regex", action="replace", value="sk-***"
        )
        assert apply(rule, "a sk-abc1 b sk-zz9") == "a sk-*** b sk-***"

    def test_replace_regex_value_is_literal(self, make_rule):
        rule = make_rule(
            pattern=r"(\w+)@", mode="regex", action="replace", value=r"\1#"
        )
        assert apply(rule, "me@host") == r"\1#host"

    def test_no_match_returns_content(self, make_rule):
        rule = make_rule(pattern="zzz", action="replace", value="y")
        assert apply(rule, "abc") == "abc"

    def test_replace_with_empty_value(self, make_rule):
        rule = make_rule(pattern="b", action="replace", value="")
        assert apply(rule, "abc") == "ac"

    def test_replace_is_idempotent_when_value_lacks_pattern(self, make_rule):
        rule = make_rule(pattern="cat", action="replace", value="dog")
        once = apply(rule, "cat and cat")
        assert apply(rule, once) == once

    def test_replace_is_not_idempotent_when_value_contains_pattern(self, make_rule):
        rule = make_rule(pattern="a", action="replace", value="aa")
        once = apply(rule, "a")
        assert once == "aa"
        assert apply(rule, once) == "aaaa"


class TestDeleteJsonField:
    def test_removes_object_holding_matching_string(self, make_rule):
        rule = make_rule(pattern="secret", action="delete_json_field")
        content = json.dumps({"a": {"x": "secret", "y": 1}, "b": 2})

        assert json.loads(apply(rule, content)) == {"b": 2}

    def test_array_survives_only_matching_element_removed(self, make_rule):
        rule = make_rule(pattern="drop-me", action="delete_json_field")
        content = json.dumps([{"k": "drop-me"}, {"k": "keep"}])

        assert json.loads(apply(rule, content)) == [{"k": "keep"}]

    def test_plain_text_unchanged(self, make_rule):
        rule = make_rule(pattern="secret", action="delete_json_field")
        content = "this secret is not json"
        assert apply(rule, content) == content

    def test_malformed_json_unchanged(self, make_rule):
        rule = make_rule(pattern="secret", action="delete_json_field")
        content = '{"a": "secret",}'
        assert delete_json_field(rule, content) == content

    def test_string_elements_in_arrays_are_kept(self, make_rule):
        rule = make_rule(pattern="secret", action="delete_json_field")
        content = json.dumps({"tags": ["secret", "public"]})

        assert json.loads(apply(rule, content)) == {"tags": ["secret", "public"]}

    def test_matching_root_object_becomes_null(self, make_rule):
        rule = make_rule(pattern="secret", action="delete_json_field")
        assert apply(rule, '{"token": "secret"}') == "null"

    def test_nested_messages(self, make_rule):
        rule = make_rule(pattern="INTERNAL", action="delete_json_field")
        content = json.dumps(
            {
                "model": "m",
                "messages": [
                    {"role": "system", "content": "INTERNAL: hidden"},
                    {"role": "user", "content": "hello"},
                ],
            }
        )

        result = json.loads(apply(rule, content))
        assert result == {
            "model": "m",
            "messages": [{"role": "user", "content": "hello"}],
        }

    def test_regex_mode(self, make_rule):
        rule = make_rule(pattern=r"^\d{4}$", mode="regex", action="delete_json_field")
        content = json.dumps([{"pin": "1234"}, {"pin": "12345"}])

        assert json.loads(apply(rule, content)) == [{"pin": "12345"}]

    def test_non_string_members_do_not_match(self, make_rule):
        rule = make_rule(pattern="1", action="delete_json_field")
        content = json.dumps({"n": 1, "flag": True})

        assert json.loads(apply(rule, content)) == {"n": 1, "flag": True}

    def test_output_keeps_member_order_and_unicode(self, make_rule):
        rule = make_rule(pattern="zzz", action="delete_json_field")
        content = '{"b": "é", "a": 1}'

        assert apply(rule, content) == '{\n  "b": "é",\n  "a": 1\n}'

    def test_visit_scalar(self, make_rule):
        rule = make_rule(pattern="x")
        assert visit(rule, "x") == ("x", False)

    def test_disabled_rule_deletes_nothing(self, make_rule):
        rule = make_rule(pattern="x", action="delete_json_field", enabled=False)
        assert apply(rule, '{"a": "x"}') == '{"a": "x"}'

    def test_deeply_nested_json_unchanged(self, make_rule):
        rule = make_rule(pattern="secret", action="delete_json_field")
        content = "[" * 5000 + "]" * 5000
        assert apply(rule, content) == content

    def test_lone_surrogate_escape_stays_escaped(self, make_rule):
        rule = make_rule(pattern="zzz", action="delete_json_field")

        result = apply(rule, '{"a": "\\ud800", "b": 1}')

        assert "\\ud800" in result
        result.encode("utf-8")
        assert json.loads(result) == {"a": "\ud800", "b": 1}
