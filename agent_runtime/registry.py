"""Tool registry: the frozen catalogue of local and MCP tools for a run.

Usage:
    registry = ToolRegistry()
    registry.register(descriptor)
    registry.merge_remote(mcp_descriptors)   # local names win
    registry.freeze()
    registry.resolve("read_file")
"""

from __future__ import annotations

import logging
from typing import Any, Generic, Iterable, TypeVar

from agent_runtime.errors import RegistryFrozenError, UnknownToolError
from agent_runtime.models import ToolDescriptor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LazyRef(Generic[T]):
    """One-shot settable cell for two-phase wiring.

    ``get()`` before ``set()`` raises, and so does a second ``set()``.
    """

    def __init__(self, name: str = "value") -> None:
        self._name = name
        self._value: T | None = None
        self._is_set = False

    def set(self, value: T) -> None:
        if self._is_set:
            raise RuntimeError(f"LazyRef {self._name!r} is already set")
        self._value = value
        self._is_set = True

    def get(self) -> T:
        if not self._is_set:
            raise RuntimeError(f"LazyRef {self._name!r} read before it was set")
        return self._value  # type: ignore[return-value]

    @property
    def is_set(self) -> bool:
        return self._is_set

    def __repr__(self) -> str:
        state = "set" if self._is_set else "unset"
        return f"LazyRef({self._name!r}, {state})"


class ToolRegistry:
    """Name → ToolDescriptor mapping, insertion-ordered."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False
        self.shadowed: list[ToolDescriptor] = []
        """Remote descriptors dropped because a local tool already owns the name."""
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {descriptor.name!r}: registry is frozen")
        if not descriptor.name:
            raise ValueError("Tool name must be non-empty")
        if descriptor.name in self._tools:
            raise ValueError(f"Duplicate tool name {descriptor.name!r}")
        self._tools[descriptor.name] = descriptor

    def merge_remote(self, descriptors: Iterable[ToolDescriptor]) -> list[ToolDescriptor]:
        """Add MCP descriptors; names already taken are shadowed.

        Returns:
            The descriptors that were actually added.
        """
        added: list[ToolDescriptor] = []
        for descriptor in descriptors:
            existing = self._tools.get(descriptor.name)
            if existing is not None:
                logger.warning(
                    "Tool %r from %s shadowed by existing %s tool of the same name",
                    descriptor.name,
                    descriptor.source,
                    existing.source,
                )
                self.shadowed.append(descriptor)
                continue
            self.register(descriptor)
            added.append(descriptor)
        return added

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def subset(self, names: Iterable[str], *, exclude: Iterable[str] = ()) -> "ToolRegistry":
        """Frozen registry restricted to *names* (unknown names are skipped)."""
        excluded = set(exclude)
        wanted = [n for n in names if n not in excluded]
        missing = [n for n in wanted if n not in self._tools]
        if missing:
            logger.warning("Ignoring unknown tool names in subset: %s", ", ".join(missing))
        # Preserve registry order, not request order
        keep = set(wanted)
        sub = ToolRegistry(d for d in self._tools.values() if d.name in keep)
        return sub.freeze()

    def summary(self) -> list[dict[str, Any]]:
        return [
            {"name": d.name, "capability": d.capability.value, "source": d.source, "description": d.description}
            for d in self._tools.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())
