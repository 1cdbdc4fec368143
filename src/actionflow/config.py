# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from .cache import DEFAULT_CACHE_DIR
from .runner import DEFAULT_STEP_TIMEOUT_MINUTES
from .scheduler import default_workers

ENV_PREFIX = "ACTIONFLOW_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_bool(value: str, name: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class RunConfig:
    """
    Settings for one `actionflow run`.

    Precedence: defaults < ACTIONFLOW_* environment < CLI options.
    """
    workers: int = field(default_factory=default_workers)
    fail_fast: bool = False
    cache_dir: str = DEFAULT_CACHE_DIR
    cache_keep: int = 10
    step_timeout_minutes: float = DEFAULT_STEP_TIMEOUT_MINUTES
    secret_prefix: str = "ACTIONFLOW_SECRET_"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RunConfig":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        def get(name: str) -> Optional[str]:
            raw = env.get(ENV_PREFIX + name)
            return raw if raw is not None and raw.strip() != "" else None

        try:
            if get("WORKERS") is not None:
                values["workers"] = int(get("WORKERS"))
            if get("FAIL_FAST") is not None:
                values["fail_fast"] = _env_bool(get("FAIL_FAST"), ENV_PREFIX + "FAIL_FAST")
            if get("CACHE_DIR") is not None:
                values["cache_dir"] = get("CACHE_DIR")
            if get("CACHE_KEEP") is not None:
                values["cache_keep"] = int(get("CACHE_KEEP"))
            if get("STEP_TIMEOUT_MINUTES") is not None:
                values["step_timeout_minutes"] = float(get("STEP_TIMEOUT_MINUTES"))
            if get("SECRET_PREFIX") is not None:
                values["secret_prefix"] = get("SECRET_PREFIX")
        except ValueError as e:
            raise ValueError(f"invalid {ENV_PREFIX}* setting: {e}") from e

        return cls(**values).validated()

    def override(self, **options: Any) -> "RunConfig":
        """Apply CLI options; None means 'not given'."""
        given = {k: v for k, v in options.items() if v is not None}
        return replace(self, **given).validated()

    def validated(self) -> "RunConfig":
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")
        if self.cache_keep < 1:
            raise ValueError(f"cache_keep must be at least 1, got {self.cache_keep}")
        if self.step_timeout_minutes <= 0:
            raise ValueError(f"step timeout must be positive, got {self.step_timeout_minutes}")
        return self
