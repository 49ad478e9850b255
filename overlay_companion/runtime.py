"""Wiring of the core components from a ServerConfig."""

import logging
import sys
from typing import Optional

from overlay_companion.adapter import PyAutoGUIAdapter, ScreenAdapter
from overlay_companion.config import ServerConfig
from overlay_companion.dispatcher import ToolDispatcher
from overlay_companion.events import EventBus
from overlay_companion.modes import ModeManager
from overlay_companion.overlays import OverlayRegistry
from overlay_companion.sessions import SessionManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send package logs to stderr; stdout belongs to the stdio transport."""
    root = logging.getLogger("overlay_companion")
    if not any(getattr(h, "_overlay_companion", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._overlay_companion = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())


class OverlayCompanion:
    """Owns one instance of every core component."""

    def __init__(self, config: Optional[ServerConfig] = None, adapter: Optional[ScreenAdapter] = None):
        self.config = config or ServerConfig()
        self.bus = EventBus(queue_size=self.config.event_queue_size)
        self.modes = ModeManager(self.bus, initial=self.config.initial_mode)
        self.overlays = OverlayRegistry(self.bus, sweep_interval=self.config.sweep_interval)
        self.sessions = SessionManager(self.bus, idle_timeout=self.config.idle_session_timeout)
        self.adapter = adapter or PyAutoGUIAdapter(capture_dir=self.config.capture_dir)
        self.dispatcher = ToolDispatcher(
            self.modes,
            self.overlays,
            self.sessions,
            self.bus,
            self.adapter,
            token_ttl=self.config.confirmation_token_ttl,
            clear_overlays_on_session_end=self.config.clear_overlays_on_session_end,
        )
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self.overlays.start()
        self.sessions.start()
        self._started = True
        logger.info(
            "Core started (mode=%s, sweep=%dms, idle timeout=%.0fs)",
            self.modes.get_mode().value,
            self.config.overlay_sweep_interval_ms,
            self.config.idle_session_timeout,
        )

    def stop(self) -> None:
        if not self._started:
            return
        self.overlays.stop()
        self.sessions.stop()
        self.bus.close()
        self._started = False
        logger.info("Core stopped")
