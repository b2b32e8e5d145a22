"""Task identity strategies used to deduplicate submissions."""

from __future__ import annotations

import abc
import hashlib
import json
import uuid
from typing import Any, Mapping, Optional

from .errors import ConfigurationError, HandlerNotFoundError


class IdentityStrategy(metaclass=abc.ABCMeta):
    """Derives the identity hash stored on every task."""

    @abc.abstractmethod
    def identity(self, name: str, namespace: str, context: Mapping[str, Any]) -> str:
        raise NotImplementedError


class HashIdentityStrategy(IdentityStrategy):
    """Equal name, namespace and context produce the same identity."""

    def identity(self, name: str, namespace: str, context: Mapping[str, Any]) -> str:
        payload = json.dumps(
            {"name": name, "namespace": namespace, "context": dict(context)},
            sort_keys=True,
            default=str,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class UniqueIdentityStrategy(IdentityStrategy):
    """Every submission is a new task."""

    def identity(self, name: str, namespace: str, context: Mapping[str, Any]) -> str:
        return uuid.uuid4().hex


_STRATEGIES = {
    "hash": HashIdentityStrategy,
    "unique": UniqueIdentityStrategy,
}


def get_identity_strategy(name: Optional[str] = None) -> IdentityStrategy:
    """Return a strategy by name, or import one from ``module:Class``."""
    name = name or "hash"
    if name in _STRATEGIES:
        return _STRATEGIES[name]()
    if ":" in name:
        from .registry.loader import import_string

        try:
            strategy_cls = import_string(name)
        except HandlerNotFoundError as e:
            raise ConfigurationError(f"Cannot load identity strategy {name}: {e}") from e
        strategy = strategy_cls()
        if not isinstance(strategy, IdentityStrategy):
            raise ConfigurationError(f"{name} is not an IdentityStrategy")
        return strategy
    raise ConfigurationError(f"Unknown identity strategy: {name}")
