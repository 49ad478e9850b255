"""
Screen/input adapter boundary.

The dispatcher only talks to ``ScreenAdapter``. ``PyAutoGUIAdapter`` is the
default implementation for X11 desktops: PyAutoGUI for input, mss (when
available) for fast capture, Pillow for image handling and pyperclip for the
clipboard.

Requirements:
- X11 display server
- System packages: python3-xlib, scrot, xclip or xsel
"""

import abc
import logging
import os
import shutil
import time
import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from overlay_companion.errors import InvalidRegion, NotFound
from overlay_companion.models import AnchorResult, CaptureResult, DisplayInfo, MonitorInfo, Region

logger = logging.getLogger(__name__)

# pyautogui tries to connect to the display at import time. On headless systems
# or when permissions are restricted, that import can raise before the MCP
# server finishes initializing. We lazily import it inside the adapter instead
# so the server can start and report a clear error to the caller.
_pyautogui = None
_pyautogui_error: Optional[str] = None

# Default folder inside workspace to save captures clients can read
_CAPTURE_DIR_NAME = "captures"

# Short-term cache so polling get_display_info does not re-screenshot every call
_DISPLAY_INFO_TTL = 2.0

# PNG text chunks recording where a capture sits on the logical screen
_ORIGIN_KEY = "overlay_companion.origin"
_SCALE_KEY = "overlay_companion.scale"


def _default_output_dir() -> str:
    """Return a workspace-local capture directory path."""
    return os.path.join(os.getcwd(), _CAPTURE_DIR_NAME)


def _get_pyautogui():
    """Load pyautogui lazily and capture any import/display errors."""
    global _pyautogui, _pyautogui_error

    if _pyautogui or _pyautogui_error:
        return _pyautogui

    try:
        import pyautogui as _pyautogui_module

        _pyautogui = _pyautogui_module
        return _pyautogui
    except Exception as exc:  # noqa: BLE001 - surface any startup issue
        _pyautogui_error = (
            "PyAutoGUI unavailable. Ensure an X11 display is accessible: "
            f"{exc}"
        )
        return None


def _require_pyautogui():
    pyautogui = _get_pyautogui()
    if pyautogui is None:
        raise RuntimeError(_pyautogui_error or "PyAutoGUI not installed")
    return pyautogui


def _safe_display_server() -> str:
    """Return the display server name with a sane default."""
    return os.environ.get("XDG_SESSION_TYPE", "unknown").lower()


# Non-fatal warnings about the runtime environment
def _collect_env_warnings() -> List[str]:
    """Collect non-fatal environment warnings to return with results."""
    warnings: List[str] = []
    display_server = _safe_display_server()
    if display_server != "x11":
        warnings.append(
            f"Display server is '{display_server}'. PyAutoGUI works best on X11; Wayland may block screenshots/clicks."
        )

    if not shutil.which("gnome-screenshot") and not shutil.which("scrot"):
        warnings.append(
            "Neither gnome-screenshot nor scrot found; PyAutoGUI may fail to capture screenshots."
        )

    return warnings


def _grab_screen(pyautogui_module):
    """
    Capture a screenshot using mss if available (faster), else fall back to PyAutoGUI.

    Returns (image, width, height, warning)
    """
    try:
        import mss  # type: ignore
        from PIL import Image

        with mss.mss() as sct:
            monitor = sct.monitors[0]
            raw = sct.grab(monitor)
            img = Image.frombytes("RGB", raw.size, raw.bgra, "raw", "BGRX")
            return img, raw.width, raw.height, None
    except Exception as exc:  # noqa: BLE001
        warning = None
        if "mss" in str(exc).lower():
            warning = f"mss capture failed, using PyAutoGUI screenshot: {exc}"

    image = pyautogui_module.screenshot()
    width, height = image.size
    return image, width, height, warning


def _scaling_factor(logical_size: Tuple[int, int], actual_size: Tuple[int, int]) -> Tuple[float, Optional[str]]:
    """
    Compare logical (input) and physical (screenshot) sizes.

    Returns a tuple of (factor, warning). Warning is None when no issues.
    """
    logical_w, logical_h = logical_size
    actual_w, actual_h = actual_size
    if logical_w <= 0 or logical_h <= 0:
        return 1.0, "Logical screen size reported as zero; assuming 1.0x scaling"

    factor = round((actual_w / logical_w + actual_h / logical_h) / 2.0, 4)
    warning = None
    if abs(factor - 1.0) > 0.01:
        warning = (
            f"Display scaling detected ({factor:.2f}x). Logical: "
            f"{logical_w}x{logical_h}, Screenshot: {actual_w}x{actual_h}."
        )
    return factor, warning


def _scaled_box(region: Region, factor: float) -> Tuple[int, int, int, int]:
    left, top, right, bottom = region.as_box()
    return (
        int(round(left * factor)),
        int(round(top * factor)),
        int(round(right * factor)),
        int(round(bottom * factor)),
    )


def _check_inside(region: Region, size: Tuple[int, int], what: str) -> None:
    """Raise InvalidRegion unless ``region`` fits entirely within a ``size`` area."""
    width, height = size
    if (
        region.width <= 0
        or region.height <= 0
        or region.x < 0
        or region.y < 0
        or region.x + region.width > width
        or region.y + region.height > height
    ):
        raise InvalidRegion(
            f"Region ({region.x}, {region.y}, {region.width}x{region.height}) lies outside {what} ({width}x{height})"
        )


def _reference_geometry(info: dict, default_scale: float) -> Tuple[int, int, float]:
    """Origin and scale stored with a capture; plain PNGs count as full-screen at ``default_scale``."""
    origin_x, origin_y = 0, 0
    raw_origin = info.get(_ORIGIN_KEY)
    if raw_origin:
        x, _, y = str(raw_origin).partition(",")
        origin_x, origin_y = int(x), int(y)
    raw_scale = info.get(_SCALE_KEY)
    scale = float(raw_scale) if raw_scale else default_scale
    return origin_x, origin_y, scale


class ScreenAdapter(abc.ABC):
    """Capabilities the core needs from the desktop."""

    @abc.abstractmethod
    def capture(self, region: Optional[Region] = None) -> CaptureResult:
        ...

    @abc.abstractmethod
    def click(self, x: int, y: int, button: str = "left", clicks: int = 1) -> None:
        ...

    @abc.abstractmethod
    def type_text(self, text: str, interval: float = 0.0) -> None:
        ...

    @abc.abstractmethod
    def get_clipboard(self) -> str:
        ...

    @abc.abstractmethod
    def set_clipboard(self, text: str) -> None:
        ...

    @abc.abstractmethod
    def display_info(self) -> DisplayInfo:
        ...

    @abc.abstractmethod
    def re_anchor(self, previous_region: Region, screenshot_ref: str) -> AnchorResult:
        ...


class PyAutoGUIAdapter(ScreenAdapter):
    def __init__(self, capture_dir: Optional[str] = None):
        self.capture_dir = capture_dir or _default_output_dir()
        self._display_cache: Optional[Tuple[float, DisplayInfo]] = None

    def _save(self, image: Any, origin: Tuple[int, int] = (0, 0), scale: float = 1.0) -> Tuple[str, str]:
        from PIL.PngImagePlugin import PngInfo

        os.makedirs(self.capture_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        ref = f"screenshot_{timestamp}_{uuid.uuid4().hex[:8]}"
        path = os.path.abspath(os.path.join(self.capture_dir, f"{ref}.png"))
        # Logical screen position of the image's top-left pixel, read back by re_anchor
        info = PngInfo()
        info.add_text(_ORIGIN_KEY, f"{origin[0]},{origin[1]}")
        info.add_text(_SCALE_KEY, repr(float(scale)))
        image.save(path, pnginfo=info)
        logger.debug("Saved capture %s", path)
        return ref, path

    def _ref_path(self, screenshot_ref: str) -> str:
        name = os.path.basename(screenshot_ref)
        if not name.endswith(".png"):
            name += ".png"
        return os.path.join(self.capture_dir, name)

    def _screen(self):
        pyautogui = _require_pyautogui()
        image, width, height, backend_warning = _grab_screen(pyautogui)
        logical_w, logical_h = pyautogui.size()
        factor, scaling_warning = _scaling_factor((logical_w, logical_h), (width, height))
        warnings = _collect_env_warnings()
        warnings.extend(w for w in (backend_warning, scaling_warning) if w)
        return image, factor, warnings, (logical_w, logical_h)

    def capture(self, region: Optional[Region] = None) -> CaptureResult:
        image, factor, warnings, screen_size = self._screen()
        origin = (0, 0)
        if region is not None:
            _check_inside(region, screen_size, "the screen")
            image = image.crop(_scaled_box(region, factor))
            origin = (region.x, region.y)
        ref, path = self._save(image, origin, factor)
        width, height = image.size
        return CaptureResult(
            screenshot_ref=ref,
            file_path=path,
            width=width,
            height=height,
            region=region,
            warnings=warnings or None,
        )

    def click(self, x: int, y: int, button: str = "left", clicks: int = 1) -> None:
        _require_pyautogui().click(x=x, y=y, clicks=clicks, button=button)

    def type_text(self, text: str, interval: float = 0.0) -> None:
        _require_pyautogui().write(text, interval=interval)

    def get_clipboard(self) -> str:
        import pyperclip

        return pyperclip.paste() or ""

    def set_clipboard(self, text: str) -> None:
        import pyperclip

        pyperclip.copy(text)

    def display_info(self) -> DisplayInfo:
        if self._display_cache:
            ts, cached = self._display_cache
            if time.monotonic() - ts < _DISPLAY_INFO_TTL:
                return cached

        pyautogui = _require_pyautogui()
        warnings = _collect_env_warnings()
        width, height = pyautogui.size()
        try:
            shot = pyautogui.screenshot()
            factor, scaling_warning = _scaling_factor((width, height), shot.size)
        except Exception as exc:  # noqa: BLE001 - degrade to unknown scaling
            factor, scaling_warning = None, f"Scaling detection failed: {exc}"
        if scaling_warning:
            warnings.append(scaling_warning)

        info = DisplayInfo(
            display_server=_safe_display_server(),
            monitors=[
                MonitorInfo(
                    index=0,
                    primary=True,
                    x=0,
                    y=0,
                    width=width,
                    height=height,
                    scaling_factor=factor,
                )
            ],
            warnings=warnings or None,
        )
        self._display_cache = (time.monotonic(), info)
        return info

    def re_anchor(self, previous_region: Region, screenshot_ref: str) -> AnchorResult:
        """Find the pixels of ``previous_region`` from an earlier capture on the current screen."""
        from PIL import Image

        path = self._ref_path(screenshot_ref)
        if not os.path.exists(path):
            raise NotFound(f"Screenshot '{screenshot_ref}' not found", {"screenshot_ref": screenshot_ref})

        pyautogui = _require_pyautogui()
        haystack, factor, _, _ = self._screen()
        with Image.open(path) as reference:
            origin_x, origin_y, ref_scale = _reference_geometry(reference.info, factor)
            # previous_region is in screen coordinates; the reference may be a region capture
            local = Region(
                x=previous_region.x - origin_x,
                y=previous_region.y - origin_y,
                width=previous_region.width,
                height=previous_region.height,
            )
            logical_size = (
                int(round(reference.size[0] / ref_scale)),
                int(round(reference.size[1] / ref_scale)),
            )
            _check_inside(local, logical_size, f"screenshot '{screenshot_ref}'")
            needle = reference.crop(_scaled_box(local, ref_scale))
            needle.load()

        not_found_exc = getattr(pyautogui, "ImageNotFoundException", LookupError)
        try:
            box = pyautogui.locate(needle, haystack)
        except not_found_exc:
            box = None

        ref, _ = self._save(haystack, (0, 0), factor)
        if box is None:
            return AnchorResult(found=False, screenshot_ref=ref)

        left, top, width, height = (int(v) for v in box)
        region = Region(
            x=int(round(left / factor)),
            y=int(round(top / factor)),
            width=int(round(width / factor)),
            height=int(round(height / factor)),
        )
        return AnchorResult(
            found=True,
            region=region,
            moved=(region.x, region.y) != (previous_region.x, previous_region.y),
            screenshot_ref=ref,
        )
