from .registry import (
    Action,
    ActionCall,
    ActionInput,
    ActionRegistry,
    ActionResult,
    default_registry,
)

__all__ = [
    "Action",
    "ActionCall",
    "ActionInput",
    "ActionRegistry",
    "ActionResult",
    "default_registry",
]
