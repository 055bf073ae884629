# Make `import rewrite_proxy` work when tests run from a checkout without an
# editable install.
import os
import sys
import textwrap

import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from rewrite_proxy.rules.models import Rule  # noqa: E402


@pytest.fixture
def make_rule():
    """Build a Rule with sensible defaults for the fields a test does not care about."""

    def _make_rule(
        pattern="secret",
        mode="contains",
        action="delete",
        value=None,
        enabled=True,
        name=None,
    ):
        return Rule(
            name=name or f"{mode}-{action}-{pattern}",
            enabled=enabled,
            mode=mode,
            pattern=pattern,
            action=action,
            value=value,
        )

    return _make_rule


@pytest.fixture
def write_yaml(tmp_path):
    """Write dedented YAML text below tmp_path and return the file path as str."""

    def _write_yaml(name, content):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return str(path)

    return _write_yaml
