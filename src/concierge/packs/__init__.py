"""Discovery rule packs.

Usage:
    from concierge.packs import default_registry

    registry = default_registry()
    pack = registry.require("school")
"""

from concierge.packs.activities import ACTIVITIES_PACK
from concierge.packs.models import (
    HIGH_SIGNAL_CATEGORIES,
    AttachmentIndicator,
    KeywordSet,
    Pack,
    PackDefaults,
    PlatformDetector,
    SenderPattern,
)
from concierge.packs.registry import BUILTIN_PACKS, PackRegistry, default_registry
from concierge.packs.school import SCHOOL_PACK

__all__ = [
    "Pack",
    "SenderPattern",
    "KeywordSet",
    "PlatformDetector",
    "AttachmentIndicator",
    "PackDefaults",
    "HIGH_SIGNAL_CATEGORIES",
    "PackRegistry",
    "default_registry",
    "BUILTIN_PACKS",
    "SCHOOL_PACK",
    "ACTIVITIES_PACK",
]
