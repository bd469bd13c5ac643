"""
Queue processor registry.

Processors are selected by the handler name in a subscription's routing
directive. Each satisfies the QueueProcessor protocol.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from relay.exceptions import UnknownHandler

if TYPE_CHECKING:
    from .base import QueueProcessor

ProcessorFactory = Callable[[], "QueueProcessor"]

# Lazy imports to avoid circular dependencies
_FACTORIES: dict[str, ProcessorFactory] | None = None
_registry_lock = threading.Lock()


def _load_processors() -> dict[str, ProcessorFactory]:
    """Load built-in processor factories lazily."""
    from .costco_routing import CostcoRoutingProcessor
    from .generic_document import DocumentProcessor

    return {
        "document": DocumentProcessor,
        "generic-document": DocumentProcessor,
        "costco-style": CostcoRoutingProcessor,
        "costco": CostcoRoutingProcessor,
    }


def _factories() -> dict[str, ProcessorFactory]:
    global _FACTORIES
    with _registry_lock:
        if _FACTORIES is None:
            _FACTORIES = _load_processors()
        return _FACTORIES


def register_handler(name: str, factory: ProcessorFactory, *, aliases: Iterable[str] = ()) -> None:
    """
    Register a custom processor under `name` (and optional aliases).

    Raises:
        ValueError: If any of the names is already registered
    """
    names = [n.strip().lower() for n in (name, *aliases)]
    if not all(names):
        raise ValueError("Processor names must be non-empty")
    registry = _factories()
    with _registry_lock:
        taken = [n for n in names if n in registry]
        if taken:
            raise ValueError(f"Processor already registered: {', '.join(taken)}")
        for n in names:
            registry[n] = factory


def unregister_handler(name: str) -> None:
    """Remove a registered name. Primarily intended for tests."""
    registry = _factories()
    with _registry_lock:
        registry.pop(name.strip().lower(), None)


def get_handler(name: str) -> "QueueProcessor":
    """
    Get a processor instance for the given handler name.

    Raises:
        UnknownHandler: If no processor is registered under `name`
    """
    factory = _factories().get((name or "").strip().lower())
    if factory is None:
        raise UnknownHandler(f"Unknown handler: {name}")
    return factory()


def get_available_handler_names() -> list[str]:
    """Get list of registered handler names (aliases included)."""
    return sorted(_factories().keys())
