from __future__ import annotations

from dataclasses import dataclass

from routeguard.config.settings import ClassificationSettings
from routeguard.domain.models import Guide


@dataclass(frozen=True)
class HazardClassifier:
    """Membership test against a configured keyword set and maneuver type-code set."""

    keywords: tuple[str, ...]
    maneuver_types: frozenset[int]

    @classmethod
    def from_settings(cls, cfg: ClassificationSettings) -> "HazardClassifier":
        keywords = tuple(sorted({k.strip().lower() for k in cfg.keywords if k and k.strip()}))
        return cls(keywords=keywords, maneuver_types=frozenset(int(t) for t in cfg.maneuver_types))

    def matches_text(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(k in lowered for k in self.keywords)

    def is_hazard(self, guide: Guide) -> bool:
        if guide.maneuver_type is not None and guide.maneuver_type in self.maneuver_types:
            return True
        return self.matches_text(f"{guide.label} {guide.narrative}")

    def hazard_guides(self, guides: list[Guide] | tuple[Guide, ...]) -> list[Guide]:
        return [g for g in guides if self.is_hazard(g)]
