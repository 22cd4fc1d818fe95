"""
provisio/providers/base.py

The capability interface every provider implements:

  - ResourceHandler: create/read/update/delete for one resource kind, plus the
    set of attributes that cannot change in place (changing them forces a
    destroy + create).
  - Provider: a named collection of handlers keyed by kind.

The planner and executor only ever talk to these two classes, so providers are
swappable without touching either.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, Optional

from provisio.errors import UnsupportedKindError


class ResourceHandler(ABC):
    """CRUD operations for one resource kind.

    Handlers receive resolved attributes (no expressions left) and return the
    attributes the provider assigned (ids, addresses, ...). The executor merges
    those over the declared inputs when recording state.
    """

    kind: ClassVar[str]
    immutable: ClassVar[FrozenSet[str]] = frozenset()

    @abstractmethod
    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        """Create the object and return provider-assigned attributes."""
        pass

    @abstractmethod
    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return fresh attributes for the recorded object, or None if it is gone."""
        pass

    @abstractmethod
    async def update(
        self, address: str, prior: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply mutable changes in place and return provider-assigned attributes."""
        pass

    @abstractmethod
    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        """Delete the recorded object. Deleting an already-missing object succeeds."""
        pass


class Provider:
    """A named set of resource handlers."""

    def __init__(self, name: str, handlers: Iterable[ResourceHandler]) -> None:
        self.name = name
        self.handlers: Dict[str, ResourceHandler] = {h.kind: h for h in handlers}

    def handler(self, kind: str, address: Optional[str] = None) -> ResourceHandler:
        """Look up the handler for `kind`.

        Raises:
            UnsupportedKindError: If this provider does not manage `kind`.
        """
        try:
            return self.handlers[kind]
        except KeyError:
            supported = ", ".join(sorted(self.handlers))
            raise UnsupportedKindError(
                f"provider '{self.name}' has no resource kind '{kind}' (supported: {supported})",
                address=address,
            ) from None

    def supports(self, kind: str) -> bool:
        return kind in self.handlers

    async def close(self) -> None:
        """Release provider resources. Nothing to do by default."""
