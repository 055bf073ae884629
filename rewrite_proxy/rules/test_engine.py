import json
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from rewrite_proxy.errors import (
    RuleEngineStoppedError,
    RuleLoadError,
    RuleNotFoundError,
)
from rewrite_proxy.rules.engine import DebugOptions, ReadWriteLock, RuleEngine
from rewrite_proxy.rules.matcher import apply


@pytest.fixture
def engine():
    return RuleEngine(logger=Mock())


class TestProcess:
    def test_empty_rule_set_is_identity(self, engine):
        assert engine.process("anything") == "anything"

    def test_rules_apply_in_order(self, engine, make_rule):
        a = make_rule(pattern="foo", name="A")
        b = make_rule(pattern="foobar", action="replace", value="X", name="B")
        content = "foobar baz"

        engine.update_rules([a, b])
        assert engine.process(content) == apply(b, apply(a, content))
        assert engine.process(content) == "bar baz"

        engine.update_rules([b, a])
        assert engine.process(content) == "X baz"

    def test_each_rule_sees_previous_output(self, engine, make_rule):
        engine.update_rules(
            [
                make_rule(pattern="a", action="replace", value="b", name="a-to-b"),
                make_rule(pattern="b", action="replace", value="c", name="b-to-c"),
            ]
        )
        assert engine.process("a") == "c"

    @pytest.mark.parametrize("content", ["", "secret", "no match", "secret secret"])
    def test_disabled_rules_are_noops(self, engine, make_rule, content):
        engine.update_rules([make_rule(pattern="secret", enabled=False)])
        assert engine.process(content) == content

    def test_disabled_delete_json_field_is_skipped(self, engine, make_rule):
        engine.update_rules(
            [make_rule(pattern="x", action="delete_json_field", enabled=False)]
        )
        assert engine.process('{"a": "x"}') == '{"a": "x"}'

    def test_deeply_nested_json_passes_through(self, engine, make_rule):
        engine.update_rules([make_rule(pattern="x", action="delete_json_field")])
        content = "[" * 5000 + "]" * 5000
        assert engine.process(content) == content

    def test_process_bytes_with_escaped_surrogate(self, engine, make_rule):
        engine.update_rules([make_rule(pattern="zzz", action="delete_json_field")])

        result = engine.process_bytes(b'{"a": "\\ud800", "b": 1}')

        assert json.loads(result) == {"a": "\ud800", "b": 1}

    def test_process_bytes_keeps_invalid_utf8(self, engine, make_rule):
        engine.update_rules([make_rule(pattern="drop")])
        body = b"\xff\xfe drop keep"
        assert engine.process_bytes(body) == b"\xff\xfe  keep"

    def test_process_after_stop_raises(self, engine):
        engine.stop()
        assert engine.stopped
        with pytest.raises(RuleEngineStoppedError):
            engine.process("x")

    def test_debug_logging(self, make_rule):
        logger = Mock()
        engine = RuleEngine(
            debug=DebugOptions(
                show_original=True, show_modified=True, show_rule_matches=True
            ),
            logger=logger,
        )
        engine.update_rules([make_rule(pattern="a")])

        engine.process("abc")

        messages = [call.args[0] for call in logger.debug.call_args_list]
        assert any("Original content" in m for m in messages)
        assert any("Modified content" in m for m in messages)


class TestReload:
    def test_load_rules_from_files(self, write_yaml):
        path = write_yaml(
            "rules.yaml",
            """
            rules:
              - name: r1
                enabled: true
                mode: contains
                pattern: foo
                action: delete
            """,
        )
        engine = RuleEngine([path], logger=Mock())

        rules = engine.load_rules()

        assert [r.name for r in rules] == ["r1"]
        assert engine.process("foobar") == "bar"

    def test_failed_reload_keeps_previous_rules(self, make_rule):
        loader = Mock(side_effect=RuleLoadError("rules.yaml", "invalid YAML"))
        engine = RuleEngine(["rules.yaml"], loader=loader, logger=Mock())
        engine.update_rules([make_rule(name="keep")])

        with pytest.raises(RuleLoadError):
            engine.reload_rules()

        assert [r.name for r in engine.get_rules()] == ["keep"]

    def test_concurrent_process_sees_whole_rule_sets(self, make_rule):
        engine = RuleEngine(logger=Mock())
        old = [
            make_rule(pattern="a", action="replace", value="1", name="old-a"),
            make_rule(pattern="b", action="replace", value="1", name="old-b"),
        ]
        new = [
            make_rule(pattern="a", action="replace", value="2", name="new-a"),
            make_rule(pattern="b", action="replace", value="2", name="new-b"),
        ]
        engine.update_rules(old)
        done = threading.Event()

        def swap():
            for i in range(200):
                engine.update_rules(new if i % 2 == 0 else old)
            done.set()

        def process():
            seen = set()
            while not done.is_set():
                seen.add(engine.process("ab"))
            return seen

        with ThreadPoolExecutor(max_workers=5) as pool:
            readers = [pool.submit(process) for _ in range(4)]
            pool.submit(swap).result()
            results = set().union(*(f.result() for f in readers))

        assert results <= {"11", "22"}


class TestRuleManagement:
    def test_queries(self, engine, make_rule):
        engine.update_rules(
            [make_rule(name="on"), make_rule(name="off", enabled=False)]
        )

        assert [r.name for r in engine.get_rules()] == ["on", "off"]
        assert [r.name for r in engine.get_enabled_rules()] == ["on"]
        assert engine.get_rule_by_name("off").enabled is False
        assert engine.get_rule_by_name("missing") is None
        assert engine.stats() == {
            "total_rules": 2,
            "enabled_rules": 1,
            "disabled_rules": 1,
        }

    def test_enable_and_disable(self, engine, make_rule):
        engine.update_rules([make_rule(name="r", enabled=False)])

        engine.enable_rule("r")
        assert engine.process("secret") == ""

        engine.disable_rule("r")
        assert engine.process("secret") == "secret"

    def test_toggle_unknown_rule(self, engine):
        with pytest.raises(RuleNotFoundError, match="rule ghost does not exist"):
            engine.enable_rule("ghost")

    def test_snapshots_are_copies(self, engine, make_rule):
        engine.update_rules([make_rule(name="r")])
        rules = engine.get_rules()
        rules.clear()
        assert len(engine.get_rules()) == 1


class TestReadWriteLock:
    def test_readers_share_the_lock(self):
        lock = ReadWriteLock()
        with lock.read_lock():
            with lock.read_lock():
                pass

    def test_writer_waits_for_reader(self):
        lock = ReadWriteLock()
        order = []
        reader_in = threading.Event()
        release_reader = threading.Event()

        def reader():
            with lock.read_lock():
                reader_in.set()
                release_reader.wait(timeout=5)
                order.append("reader")

        def writer():
            reader_in.wait(timeout=5)
            with lock.write_lock():
                order.append("writer")

        threads = [threading.Thread(target=reader), threading.Thread(target=writer)]
        for t in threads:
            t.start()
        reader_in.wait(timeout=5)
        release_reader.set()
        for t in threads:
            t.join(timeout=5)

        assert order == ["reader", "writer"]
