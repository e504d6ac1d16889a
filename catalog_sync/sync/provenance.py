"""URL provenance rules for image and datasheet fields."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional

from catalog_sync.core.config import DEFAULT_SELF_HOSTED_MARKERS, Settings


@dataclass(frozen=True)
class ProvenanceRules:
    """
    blocked_hosts: fragments of hosts we never link to (hot-linking)
    self_hosted_markers: environment -> URL fragments of our own storage,
        checked in insertion order (a staging URL can embed a production name,
        so staging is listed first)
    """

    blocked_hosts: tuple[str, ...] = ("digikey",)
    self_hosted_markers: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: {k: tuple(v) for k, v in DEFAULT_SELF_HOSTED_MARKERS.items()}
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProvenanceRules":
        return cls(
            blocked_hosts=tuple(settings.BLOCKED_HOSTS),
            self_hosted_markers={
                env: tuple(m.lower() for m in markers)
                for env, markers in settings.SELF_HOSTED_MARKERS.items()
            },
        )

    def is_blocked(self, url: str) -> bool:
        lowered = (url or "").lower()
        return any(host in lowered for host in self.blocked_hosts)

    def environment_of(self, url: str) -> Optional[str]:
        """Deployment environment whose storage hosts url, or None if external."""
        lowered = (url or "").lower()
        if not lowered:
            return None
        for env, markers in self.self_hosted_markers.items():
            if any(marker in lowered for marker in markers):
                return env
        return None

    def is_self_hosted(self, url: str) -> bool:
        return self.environment_of(url) is not None
