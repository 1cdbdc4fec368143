# secrets.py
from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

MASK = "***"
SECRET_ENV_PREFIX = "ACTIONFLOW_SECRET_"


class SecretsProvider(Protocol):
    """External key-value store queried by secret name at evaluation time."""

    def get(self, name: str) -> Optional[str]:
        ...


class MappingSecrets:
    """Secrets from an in-memory mapping (CLI `--secret NAME=VALUE`, tests)."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values = {k.upper(): str(v) for k, v in (values or {}).items()}

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name.upper())

    def known(self) -> Dict[str, str]:
        return dict(self._values)


class EnvSecrets:
    """Secrets from environment variables, e.g. ACTIONFLOW_SECRET_NPM_TOKEN."""

    def __init__(self, prefix: str = SECRET_ENV_PREFIX, environ: Optional[Mapping] = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> Optional[str]:
        return self._environ.get(f"{self.prefix}{name.upper()}")

    def known(self) -> Dict[str, str]:
        if not self.prefix:
            return {}
        n = len(self.prefix)
        return {k[n:]: v for k, v in self._environ.items() if k.startswith(self.prefix) and k[n:]}


class ChainSecrets:
    """First provider that knows the name wins."""

    def __init__(self, *providers: SecretsProvider):
        self.providers = list(providers)

    def get(self, name: str) -> Optional[str]:
        for p in self.providers:
            value = p.get(name)
            if value is not None:
                return value
        return None

    def known(self) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for p in reversed(self.providers):
            merged.update(known_secrets(p))
        return merged


def known_secrets(provider: Optional[SecretsProvider]) -> Dict[str, str]:
    """Every name -> value a provider can list. Providers without `known()` list nothing."""
    known = getattr(provider, "known", None)
    if known is None:
        return {}
    return dict(known())


def env_prefixes(provider: Optional[SecretsProvider]) -> Tuple[str, ...]:
    """
    Environment prefixes that hold secrets. Variables under them never reach
    step processes; a step only sees a secret mapped through `secrets.X`.
    """
    found = [SECRET_ENV_PREFIX]
    if isinstance(provider, ChainSecrets):
        for p in provider.providers:
            found.extend(env_prefixes(p))
    elif isinstance(provider, EnvSecrets) and provider.prefix:
        found.append(provider.prefix)
    return tuple(dict.fromkeys(found))


class Redactor:
    """
    Masks every registered secret value in text bound for a sink.

    Values a provider can list are registered when the run starts; the rest
    as they are resolved, so anything a step could see is known before its
    output is captured.
    """

    MIN_LENGTH = 2

    def __init__(self) -> None:
        self._values: List[str] = []
        self._lock = threading.Lock()

    def register(self, value: Optional[str]) -> None:
        if value is None:
            return
        candidates = {value, value.strip()}
        # multi-line secrets are masked line by line as well
        candidates.update(line.strip() for line in value.splitlines())
        with self._lock:
            for v in candidates:
                if len(v) >= self.MIN_LENGTH and v not in self._values:
                    self._values.append(v)
            self._values.sort(key=len, reverse=True)

    def redact(self, text: Optional[str]) -> str:
        if not text:
            return text or ""
        with self._lock:
            values = list(self._values)
        for v in values:
            text = text.replace(v, MASK)
        return text

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


class SecretsView(Mapping):
    """
    The `secrets` namespace seen by expressions.

    Lookups go to the provider and register the value with the redactor.
    Iteration is empty so `toJSON(secrets)` never dumps values.
    """

    def __init__(self, provider: Optional[SecretsProvider], redactor: Redactor):
        self._provider = provider
        self._redactor = redactor

    def __getitem__(self, name: str) -> str:
        if self._provider is None:
            raise KeyError(name)
        value = self._provider.get(name)
        if value is None:
            raise KeyError(name)
        self._redactor.register(value)
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(())

    def __len__(self) -> int:
        return 0
