"""
Overlay registry.

Holds every active overlay annotation and drives its lifecycle: creation
(single or atomic batch), explicit removal, clearing, and TTL expiry through a
background sweep.

Mutations are serialized by a lock and publish a new immutable snapshot of the
overlay map, so readers (``list_active``/``get``) never take the lock and
never see half of a batch.

Expiry bound: an overlay is hidden from ``list_active`` as soon as its
``expires_at`` passes, and is physically removed (with its
``overlay_expired`` event) by the next sweep, i.e. at most one sweep interval
later plus thread scheduling jitter.
"""

import logging
import threading
import uuid
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from overlay_companion.errors import InvalidRegion, NotFound
from overlay_companion.events import EventBus
from overlay_companion.models import EventType, Overlay, Region, utcnow
from overlay_companion.workers import PeriodicWorker

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 0.1


class OverlaySpec(BaseModel):
    """Parameters for creating one overlay."""
    region: Region
    color: str
    label: str = ""
    ttl_millis: int = Field(0, ge=0)
    click_through: bool = True


def check_region(region: Region, index: Optional[int] = None) -> None:
    """Raise InvalidRegion unless the region has positive size and non-negative origin."""
    problems = []
    if region.width <= 0 or region.height <= 0:
        problems.append("width and height must be greater than 0")
    if region.x < 0 or region.y < 0:
        problems.append("x and y must not be negative")
    if not problems:
        return
    where = f"Overlay at index {index}: " if index is not None else ""
    raise InvalidRegion(f"{where}invalid region ({'; '.join(problems)})", index=index)


class OverlayRegistry:
    def __init__(
        self,
        bus: EventBus,
        clock: Callable[[], datetime] = utcnow,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self._bus = bus
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, Overlay] = MappingProxyType({})
        self._sweeper = PeriodicWorker("overlay-sweeper", sweep_interval, self.sweep)

    @property
    def sweep_interval(self) -> float:
        return self._sweeper.interval

    @property
    def running(self) -> bool:
        return self._sweeper.running

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()

    def _commit(self, overlays: Dict[str, Overlay]) -> None:
        self._snapshot = MappingProxyType(overlays)

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def create(
        self,
        region: Region,
        color: str,
        label: str = "",
        ttl_millis: int = 0,
        click_through: bool = True,
        session_id: Optional[str] = None,
    ) -> Overlay:
        spec = OverlaySpec(
            region=region,
            color=color,
            label=label,
            ttl_millis=ttl_millis,
            click_through=click_through,
        )
        check_region(spec.region)
        return self._insert([spec], session_id)[0]

    def create_batch(self, specs: Sequence[OverlaySpec], session_id: Optional[str] = None) -> List[Overlay]:
        """Create every overlay in ``specs`` or none of them."""
        for index, spec in enumerate(specs):
            check_region(spec.region, index)
        return self._insert(specs, session_id)

    def _insert(self, specs: Sequence[OverlaySpec], session_id: Optional[str]) -> List[Overlay]:
        with self._lock:
            now = self._clock()
            created = [
                Overlay.build(
                    overlay_id=self._new_id(),
                    region=spec.region,
                    color=spec.color,
                    label=spec.label,
                    ttl_millis=spec.ttl_millis,
                    click_through=spec.click_through,
                    created_at=now,
                    session_id=session_id,
                )
                for spec in specs
            ]
            overlays = dict(self._snapshot)
            for overlay in created:
                overlays[overlay.id] = overlay
            self._commit(overlays)
            for overlay in created:
                self._bus.publish(EventType.OVERLAY_CREATED, {"overlay": overlay.model_dump(mode="json")})
        logger.debug("Created %d overlay(s)", len(created))
        return created

    def remove(self, overlay_id: str) -> Overlay:
        with self._lock:
            overlay = self._snapshot.get(overlay_id)
            if overlay is None or overlay.is_expired(self._clock()):
                raise NotFound(f"Overlay '{overlay_id}' not found", {"overlay_id": overlay_id})
            overlays = dict(self._snapshot)
            del overlays[overlay_id]
            self._commit(overlays)
            self._bus.publish(EventType.OVERLAY_REMOVED, {"overlay_id": overlay_id, "reason": "removed"})
        return overlay

    def clear_all(self) -> int:
        """Remove every overlay; returns how many active overlays were removed."""
        return self._remove_where(lambda overlay: True, reason="cleared")

    def remove_by_session(self, session_id: str) -> int:
        return self._remove_where(lambda overlay: overlay.session_id == session_id, reason="session_ended")

    def _remove_where(self, predicate: Callable[[Overlay], bool], reason: str) -> int:
        with self._lock:
            if not self._snapshot:
                return 0
            now = self._clock()
            kept: Dict[str, Overlay] = {}
            removed: List[Overlay] = []
            expired: List[Overlay] = []
            for overlay_id, overlay in self._snapshot.items():
                if not predicate(overlay):
                    kept[overlay_id] = overlay
                elif overlay.is_expired(now):
                    expired.append(overlay)
                else:
                    removed.append(overlay)
            if not removed and not expired:
                return 0
            self._commit(kept)
            for overlay in expired:
                self._bus.publish(EventType.OVERLAY_EXPIRED, {"overlay_id": overlay.id})
            for overlay in removed:
                self._bus.publish(EventType.OVERLAY_REMOVED, {"overlay_id": overlay.id, "reason": reason})
        return len(removed)

    def sweep(self) -> int:
        """Drop overlays past their expiry, one ``overlay_expired`` event each."""
        now = self._clock()
        if not any(overlay.is_expired(now) for overlay in self._snapshot.values()):
            return 0
        with self._lock:
            now = self._clock()
            kept = {}
            expired = []
            for overlay_id, overlay in self._snapshot.items():
                if overlay.is_expired(now):
                    expired.append(overlay)
                else:
                    kept[overlay_id] = overlay
            if not expired:
                return 0
            self._commit(kept)
            for overlay in expired:
                self._bus.publish(EventType.OVERLAY_EXPIRED, {"overlay_id": overlay.id})
        logger.debug("Sweep expired %d overlay(s)", len(expired))
        return len(expired)

    def list_active(self) -> List[Overlay]:
        now = self._clock()
        overlays = [o for o in self._snapshot.values() if not o.is_expired(now)]
        overlays.sort(key=lambda o: o.created_at)
        return overlays

    def get(self, overlay_id: str) -> Overlay:
        overlay = self._snapshot.get(overlay_id)
        if overlay is None or overlay.is_expired(self._clock()):
            raise NotFound(f"Overlay '{overlay_id}' not found", {"overlay_id": overlay_id})
        return overlay
