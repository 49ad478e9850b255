"""
Operating mode and the permission matrix it selects.
"""

import logging
import threading
from enum import Enum
from typing import Dict, Optional

from overlay_companion.errors import PermissionDenied
from overlay_companion.events import EventBus
from overlay_companion.models import EventType

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    PASSIVE = "passive"
    ASSIST = "assist"
    AUTOPILOT = "autopilot"
    COMPOSING = "composing"


class ActionCategory(str, Enum):
    OBSERVE = "observe"
    ANNOTATE = "annotate"
    ACT = "act"
    COMPOSE = "compose"


class Decision(str, Enum):
    ALLOWED = "allowed"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    DENIED = "denied"


_A = Decision.ALLOWED
_C = Decision.REQUIRES_CONFIRMATION
_D = Decision.DENIED

PERMISSION_MATRIX: Dict[Mode, Dict[ActionCategory, Decision]] = {
    Mode.PASSIVE: {
        ActionCategory.OBSERVE: _A,
        ActionCategory.ANNOTATE: _D,
        ActionCategory.ACT: _D,
        ActionCategory.COMPOSE: _D,
    },
    Mode.ASSIST: {
        ActionCategory.OBSERVE: _A,
        ActionCategory.ANNOTATE: _A,
        ActionCategory.ACT: _C,
        ActionCategory.COMPOSE: _C,
    },
    Mode.AUTOPILOT: {
        ActionCategory.OBSERVE: _A,
        ActionCategory.ANNOTATE: _A,
        ActionCategory.ACT: _A,
        ActionCategory.COMPOSE: _A,
    },
    Mode.COMPOSING: {
        ActionCategory.OBSERVE: _A,
        ActionCategory.ANNOTATE: _A,
        ActionCategory.ACT: _C,
        ActionCategory.COMPOSE: _A,
    },
}


def decide(mode: Mode, category: ActionCategory) -> Decision:
    """Look up the matrix entry for ``mode`` and ``category``."""
    return PERMISSION_MATRIX[Mode(mode)][ActionCategory(category)]


class ModeManager:
    """Sole owner of the process-wide mode."""

    def __init__(self, bus: EventBus, initial: Mode = Mode.ASSIST):
        self._bus = bus
        self._lock = threading.Lock()
        self._mode = Mode(initial)

    def get_mode(self) -> Mode:
        with self._lock:
            return self._mode

    def set_mode(self, new_mode: Mode) -> Mode:
        """Replace the current mode and return the previous one."""
        new_mode = Mode(new_mode)
        with self._lock:
            previous = self._mode
            self._mode = new_mode
            self._bus.publish(
                EventType.MODE_CHANGED,
                {"from": previous.value, "to": new_mode.value},
            )
        logger.info("Mode changed: %s -> %s", previous.value, new_mode.value)
        return previous

    def check_permission(self, category: ActionCategory, mode: Optional[Mode] = None) -> Decision:
        """Return ALLOWED or REQUIRES_CONFIRMATION, raising PermissionDenied otherwise."""
        if mode is None:
            mode = self.get_mode()
        decision = decide(mode, category)
        if decision is Decision.DENIED:
            raise PermissionDenied(
                f"'{ActionCategory(category).value}' actions are not permitted in {mode.value} mode",
                {"mode": mode.value, "category": ActionCategory(category).value},
            )
        return decision
