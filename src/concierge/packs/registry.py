"""Pack registry."""

from __future__ import annotations

from concierge.core.errors import PackError
from concierge.core.logging import get_logger
from concierge.packs.activities import ACTIVITIES_PACK
from concierge.packs.models import Pack
from concierge.packs.school import SCHOOL_PACK

logger = get_logger(__name__)

BUILTIN_PACKS: tuple[Pack, ...] = (SCHOOL_PACK, ACTIVITIES_PACK)


class PackRegistry:
    """Holds the packs available to discovery and the pipeline.

    Registries are plain instances; nothing is registered at import time.
    """

    def __init__(self) -> None:
        self._packs: dict[str, Pack] = {}

    def register(self, pack: Pack) -> None:
        """Register a pack.

        Raises:
            PackError: If a pack with the same id is already registered
        """
        if pack.id in self._packs:
            raise PackError(f"Pack '{pack.id}' is already registered")
        self._packs[pack.id] = pack
        logger.debug("pack_registered", pack_id=pack.id, priority=pack.priority)

    def get(self, pack_id: str) -> Pack | None:
        return self._packs.get(pack_id)

    def require(self, pack_id: str) -> Pack:
        """Get a pack or raise PackError listing what is available."""
        pack = self._packs.get(pack_id)
        if pack is None:
            available = ", ".join(sorted(self._packs)) or "none"
            raise PackError(f"Unknown pack '{pack_id}'. Available packs: {available}")
        return pack

    def get_all(self) -> list[Pack]:
        return list(self._packs.values())

    def get_all_by_priority(self) -> list[Pack]:
        """All packs, highest priority first."""
        return sorted(self._packs.values(), key=lambda p: p.priority, reverse=True)

    def has(self, pack_id: str) -> bool:
        return pack_id in self._packs

    def count(self) -> int:
        return len(self._packs)


def default_registry() -> PackRegistry:
    """A registry holding the built-in packs."""
    registry = PackRegistry()
    for pack in BUILTIN_PACKS:
        registry.register(pack)
    return registry
