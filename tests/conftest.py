"""Pytest configuration and shared fixtures."""

import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from PIL import Image

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from overlay_companion.adapter import ScreenAdapter
from overlay_companion.dispatcher import ToolDispatcher
from overlay_companion.events import EventBus
from overlay_companion.models import AnchorResult, CaptureResult, DisplayInfo, MonitorInfo
from overlay_companion.modes import Mode, ModeManager
from overlay_companion.overlays import OverlayRegistry
from overlay_companion.sessions import SessionManager


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingAdapter(ScreenAdapter):
    """Screen adapter that records calls instead of touching the desktop."""

    def __init__(self):
        self.calls = []
        self.clipboard = ""
        self.fail_on = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise RuntimeError(f"{name}: cannot open display :0 (/home/user/.Xauthority)")

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]

    def capture(self, region=None):
        self._record("capture", region)
        return CaptureResult(
            screenshot_ref="screenshot_test",
            file_path="/tmp/screenshot_test.png",
            width=region.width if region else 1920,
            height=region.height if region else 1080,
            region=region,
        )

    def click(self, x, y, button="left", clicks=1):
        self._record("click", x, y, button, clicks)

    def type_text(self, text, interval=0.0):
        self._record("type_text", text, interval)

    def get_clipboard(self):
        self._record("get_clipboard")
        return self.clipboard

    def set_clipboard(self, text):
        self._record("set_clipboard", text)
        self.clipboard = text

    def display_info(self):
        self._record("display_info")
        return DisplayInfo(
            display_server="x11",
            monitors=[MonitorInfo(index=0, primary=True, x=0, y=0, width=1920, height=1080, scaling_factor=1.0)],
        )

    def re_anchor(self, previous_region, screenshot_ref):
        self._record("re_anchor", previous_region, screenshot_ref)
        return AnchorResult(found=True, region=previous_region, moved=False, screenshot_ref="screenshot_new")


@pytest.fixture
def mock_pyautogui(monkeypatch):
    """Mock PyAutoGUI to avoid X11 dependencies."""
    mock_pag = Mock()
    mock_pag.size.return_value = (1920, 1080)
    mock_pag.position.return_value = (960, 540)
    mock_pag.click = Mock()
    mock_pag.write = Mock()

    # Mock screenshot
    mock_screenshot = Mock()
    mock_screenshot.size = (1920, 1080)
    mock_screenshot.save = Mock()
    mock_screenshot.crop = Mock(return_value=mock_screenshot)
    mock_pag.screenshot.return_value = mock_screenshot

    # Inject into the adapter's lazy loader
    import overlay_companion.adapter as adapter
    monkeypatch.setattr(adapter, "_pyautogui", mock_pag)
    monkeypatch.setattr(adapter, "_pyautogui_error", None)

    return mock_pag


@pytest.fixture
def mock_x11_env(monkeypatch):
    """Mock X11 environment variables."""
    monkeypatch.setenv("DISPLAY", ":0")
    monkeypatch.setenv("XAUTHORITY", "/home/user/.Xauthority")
    monkeypatch.setenv("XDG_SESSION_TYPE", "x11")


@pytest.fixture
def sample_screenshot():
    """Create a sample screenshot image for testing."""
    return Image.new('RGB', (1920, 1080), color='white')


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    bus = EventBus(queue_size=64)
    yield bus
    bus.close()


@pytest.fixture
def registry(bus, clock):
    return OverlayRegistry(bus, clock=clock, sweep_interval=0.05)


@pytest.fixture
def recording_adapter():
    return RecordingAdapter()


@pytest.fixture
def core(bus, clock, recording_adapter):
    """Core components on a fake clock, background workers not started."""
    modes = ModeManager(bus, initial=Mode.ASSIST)
    overlays = OverlayRegistry(bus, clock=clock)
    sessions = SessionManager(bus, idle_timeout=60.0, clock=clock)
    dispatcher = ToolDispatcher(
        modes,
        overlays,
        sessions,
        bus,
        recording_adapter,
        token_ttl=30.0,
        clock=clock,
    )
    session = sessions.open()
    return SimpleNamespace(
        bus=bus,
        clock=clock,
        modes=modes,
        overlays=overlays,
        sessions=sessions,
        adapter=recording_adapter,
        dispatcher=dispatcher,
        session_id=session.id,
    )


@pytest.fixture
def server_runtime(recording_adapter):
    """Install a runtime with a recording adapter behind the MCP tool functions."""
    from overlay_companion import server
    from overlay_companion.config import ServerConfig
    from overlay_companion.runtime import OverlayCompanion

    runtime = OverlayCompanion(ServerConfig(), adapter=recording_adapter)
    server.set_runtime(runtime)
    yield runtime
    runtime.stop()
    server.set_runtime(None)
