"""Descriptor source registry and abstract DescriptorSource base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from onionlens.config import OnionlensConfig
    from onionlens.models import (
        BridgeStatusSnapshot,
        ConsensusSnapshot,
        PoolAssignment,
        ServerDescriptor,
    )


class DescriptorSource(ABC):
    """Abstract base class for inbound snapshot feeds.

    A source yields already parsed documents; each ``read_*`` call returns
    the documents that are new since the source was created.
    """

    @classmethod
    @abstractmethod
    def from_config(cls, config: OnionlensConfig) -> DescriptorSource:
        """Create the source from application configuration."""

    @abstractmethod
    def read_consensuses(self) -> Iterator[ConsensusSnapshot]:
        """Yield relay consensuses."""

    @abstractmethod
    def read_bridge_statuses(self) -> Iterator[BridgeStatusSnapshot]:
        """Yield bridge network statuses."""

    @abstractmethod
    def read_server_descriptors(self) -> Iterator[ServerDescriptor]:
        """Yield relay server descriptors."""

    @abstractmethod
    def read_pool_assignments(self) -> Iterator[PoolAssignment]:
        """Yield bridge pool assignments."""


def _build_registry() -> dict[str, type[DescriptorSource]]:
    """Build the source-name → DescriptorSource-class mapping.

    Imports are deferred to avoid circular imports and to keep the
    registry definition in one place.
    """
    from onionlens.sources.jsondir import JsonDirectorySource

    return {
        "jsondir": JsonDirectorySource,
    }


def get_source(name: str, config: OnionlensConfig) -> DescriptorSource:
    """Look up and instantiate the source called *name*.

    Args:
        name: Source name (e.g. ``"jsondir"``).
        config: Loaded application configuration.

    Returns:
        An instance of the matching ``DescriptorSource`` subclass.

    Raises:
        ValueError: If *name* is not in the registry.
    """
    registry = _build_registry()
    source_cls = registry.get(name)
    if source_cls is None:
        known = ", ".join(sorted(registry))
        raise ValueError(f"Unknown source {name!r}. Known sources: {known}")
    return source_cls.from_config(config)


def registered_sources() -> list[str]:
    """Return a sorted list of all registered source names."""
    return sorted(_build_registry())
