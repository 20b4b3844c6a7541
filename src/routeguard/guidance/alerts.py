"""
Staged approach alerts for the next hazard guide.

The tracker turns (next hazard, distance, speed, limit) samples into display text plus
discrete events a UI can act on: a stage announcement when a distance threshold is
crossed, and an overspeed warning while the vehicle is above the limit near the camera.
No audio is produced here.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from routeguard.config.settings import AlertSettings
from routeguard.domain.models import Guide


@dataclass(frozen=True)
class ApproachAlert:
    text: str | None = None
    announcement: str | None = None
    stage_m: int | None = None
    overspeed: bool = False
    overspeed_beep: bool = False


class HazardAlertTracker:
    def __init__(self, cfg: AlertSettings):
        self._cfg = cfg
        self._thresholds = sorted({int(t) for t in cfg.thresholds_m}, reverse=True)
        self._guide_id: str | None = None
        self._fired: set[int] = set()
        self._last_announced_at: float | None = None
        self._last_overspeed_at: float | None = None
        self.latest_text: str | None = None
        self.latest = ApproachAlert()

    def reset(self) -> None:
        self._guide_id = None
        self._fired.clear()
        self._last_overspeed_at = None
        self.latest_text = None
        self.latest = ApproachAlert()

    def _elapsed(self, since: float | None, now: float) -> float:
        return float("inf") if since is None else now - since

    def update(
        self,
        guide: Guide | None,
        distance_m: int | None,
        speed_kph: float,
        limit_kph: int | None,
    ) -> ApproachAlert:
        """Advance stage and overspeed state by one telemetry sample; also kept as `latest`."""
        self.latest = self._evaluate(guide, distance_m, speed_kph, limit_kph)
        return self.latest

    def _evaluate(
        self,
        guide: Guide | None,
        distance_m: int | None,
        speed_kph: float,
        limit_kph: int | None,
    ) -> ApproachAlert:
        if guide is None or distance_m is None or distance_m < 0:
            self.reset()
            return ApproachAlert()

        if guide.id != self._guide_id:
            self._guide_id = guide.id
            self._fired.clear()
            self.latest_text = None

        cfg = self._cfg
        if distance_m > cfg.max_display_m:
            self.latest_text = None
            return ApproachAlert()

        limit = limit_kph if limit_kph is not None and limit_kph > 0 else None
        text = f"Speed camera {distance_m} m"
        if limit is not None:
            text += f" · limit {limit}"

        rounded_speed = max(0, int(round(speed_kph)))
        now = time.monotonic()

        overspeed = False
        beep = False
        if limit is not None and distance_m <= cfg.overspeed_window_m:
            if rounded_speed >= limit + 1:
                overspeed = True
                text = f"Overspeed! limit {limit} · {distance_m} m"
                if self._elapsed(self._last_overspeed_at, now) >= cfg.overspeed_repeat_seconds:
                    self._last_overspeed_at = now
                    beep = True
            else:
                self._last_overspeed_at = None

        self.latest_text = text

        pending = [t for t in self._thresholds if distance_m <= t and t not in self._fired]
        if not pending:
            return ApproachAlert(text=text, overspeed=overspeed, overspeed_beep=beep)

        stage = min(pending)
        # Jumping straight to a near stage silences the farther ones.
        self._fired.update(t for t in self._thresholds if t >= stage)

        if self._elapsed(self._last_announced_at, now) < cfg.announce_interval_seconds:
            return ApproachAlert(text=text, overspeed=overspeed, overspeed_beep=beep)
        self._last_announced_at = now

        announcement = f"Speed camera in {stage} meters"
        if stage <= cfg.slow_down_stage_m and rounded_speed >= cfg.slow_down_speed_kph:
            announcement += ". Slow down"
        return ApproachAlert(
            text=text,
            announcement=announcement,
            stage_m=stage,
            overspeed=overspeed,
            overspeed_beep=beep,
        )
