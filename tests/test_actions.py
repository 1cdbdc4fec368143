from __future__ import annotations

import pytest

from actionflow.actions import ActionCall, ActionInput, ActionRegistry, ActionResult, default_registry
from actionflow.actions.builtin import _setup_tool, make_cache_action, version_matches
from actionflow.actions.registry import split_ref


def _call(workspace, **inputs) -> ActionCall:
    logs = []
    call = ActionCall(inputs=inputs, env={}, workspace=workspace, job="j", step="s", log=logs.append)
    call.logs = logs
    return call


def test_split_ref():
    assert split_ref("Actions/Checkout@v4") == ("actions/checkout", "v4")
    assert split_ref("acme/tool") == ("acme/tool", None)


def test_decorator_registers_and_resolve_ignores_version():
    reg = ActionRegistry()

    @reg.action("acme/greet", inputs={"who": ActionInput(required=True)}, outputs=["greeting"])
    def greet(call):
        """Say hello."""
        return ActionResult(outputs={"greeting": f"hi {call.inputs['who']}"})

    action = reg.resolve("acme/greet@v9")
    assert action is not None
    assert action.execute is greet
    assert action.outputs == ("greeting",)
    assert action.description == "Say hello."
    assert reg.resolve("acme/other@v1") is None


def test_default_registry_names(tmp_path):
    assert default_registry(cache_dir=tmp_path).names() == [
        "actions/cache", "actions/checkout", "actions/setup-node", "actions/setup-python",
    ]


@pytest.mark.parametrize(
    ("requested", "installed", "ok"),
    [
        ("16.x", "v16.20.2", True),
        ("16", "v16.20.2", True),
        ("18", "v16.20.2", False),
        ("3.11", "Python 3.11.4", True),
        ("3.12", "Python 3.11.4", False),
        ("3", "no digits here", False),
    ],
)
def test_version_matches(requested, installed, ok):
    assert version_matches(requested, installed) is ok


def test_setup_tool_missing(tmp_path):
    result = _setup_tool(_call(tmp_path), tool="definitely-not-a-real-tool-xyz", version_input="v")
    assert not result.ok
    assert "not available" in result.message


class TestCacheAction:
    def test_requires_path_and_key(self, tmp_path):
        cache = make_cache_action(tmp_path / "store")
        assert not cache(_call(tmp_path, path="", key="k")).ok

    def test_miss_then_post_save_then_hit(self, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (ws / "deps").mkdir()
        (ws / "deps" / "lib.txt").write_text("v1")
        cache = make_cache_action(tmp_path / "store")

        first = cache(_call(ws, path="deps", key="deps-1"))
        assert first.outputs["cache-hit"] == "false"
        assert first.outputs["cache-matched-key"] == ""
        assert first.post is not None
        first.post()

        (ws / "deps" / "lib.txt").unlink()
        call = _call(ws, path="deps", key="deps-1")
        second = cache(call)
        assert second.outputs["cache-hit"] == "true"
        assert second.outputs["cache-primary-key"] == "deps-1"
        assert second.post is None
        assert (ws / "deps" / "lib.txt").read_text() == "v1"
        assert any("cache hit" in line for line in call.logs)

    def test_restore_keys_give_partial_hit(self, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (ws / "f").write_text("x")
        cache = make_cache_action(tmp_path / "store")
        cache(_call(ws, path="f", key="deps-old")).post()

        result = cache(_call(ws, path="f", key="deps-new", **{"restore-keys": "deps-\n"}))
        assert result.outputs["cache-hit"] == "false"
        assert result.outputs["cache-matched-key"] == "deps-old"
        assert result.post is not None
