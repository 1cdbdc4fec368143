# registry.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

# ---------------------------------------------------------------------
# An action is a capability record, not a class hierarchy:
#   inputs   name -> ActionInput (required/default)
#   outputs  declared output names
#   execute  ActionCall -> ActionResult
#
# The scheduler never looks inside `execute`; it only checks inputs and
# filters outputs against the declaration.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ActionInput:
    required: bool = False
    default: Optional[str] = None
    description: str = ""


@dataclass
class ActionCall:
    """What an action gets when it runs."""
    inputs: Dict[str, str]
    env: Dict[str, str]
    workspace: Path
    job: str
    step: str
    log: Callable[[str], None] = print


@dataclass
class ActionResult:
    exit_code: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    # runs after the job's steps when the job succeeded (cache save, cleanup)
    post: Optional[Callable[[], None]] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class Action:
    name: str
    execute: Callable[[ActionCall], ActionResult]
    inputs: Dict[str, ActionInput] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    description: str = ""


def split_ref(ref: str) -> Tuple[str, Optional[str]]:
    """'actions/checkout@v4' -> ('actions/checkout', 'v4')."""
    name, _, version = ref.strip().partition("@")
    return name.lower(), (version or None)


class ActionRegistry:
    """Lookup table resolving `uses:` references to actions."""

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    def register(self, action: Action) -> Action:
        name, _ = split_ref(action.name)
        self._actions[name] = action
        return action

    def action(
        self,
        name: str,
        *,
        inputs: Optional[Dict[str, ActionInput]] = None,
        outputs: Tuple[str, ...] | List[str] = (),
        description: str = "",
    ) -> Callable[[Callable[[ActionCall], ActionResult]], Callable[[ActionCall], ActionResult]]:
        """
        Decorator form:

            @registry.action("acme/greet", inputs={"who": ActionInput(required=True)},
                             outputs=["greeting"])
            def greet(call):
                return ActionResult(outputs={"greeting": f"hi {call.inputs['who']}"})
        """
        def deco(fn: Callable[[ActionCall], ActionResult]) -> Callable[[ActionCall], ActionResult]:
            self.register(Action(
                name=name,
                execute=fn,
                inputs=dict(inputs or {}),
                outputs=tuple(outputs),
                description=description or (fn.__doc__ or "").strip(),
            ))
            return fn
        return deco

    def resolve(self, ref: str) -> Optional[Action]:
        name, _version = split_ref(ref)
        return self._actions.get(name)

    def names(self) -> List[str]:
        return sorted(self._actions)


def default_registry(cache_dir: str | Path | None = None, cache_keep: int = 10) -> ActionRegistry:
    """A fresh registry holding the built-in actions."""
    from .builtin import register_builtins
    from ..cache import DEFAULT_CACHE_DIR

    return register_builtins(ActionRegistry(), cache_dir=cache_dir or DEFAULT_CACHE_DIR, cache_keep=cache_keep)
