"""
Data models shared by the registry, sessions, event bus and tool responses.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Region(BaseModel):
    """Rectangle in screen pixels."""
    model_config = ConfigDict(extra="forbid")

    x: StrictInt = Field(description="Left edge in pixels")
    y: StrictInt = Field(description="Top edge in pixels")
    width: StrictInt = Field(description="Width in pixels")
    height: StrictInt = Field(description="Height in pixels")

    def as_box(self) -> tuple:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


class Overlay(BaseModel):
    """A rectangular, optionally time-bounded on-screen annotation."""
    id: str
    region: Region
    color: str
    label: str = ""
    click_through: bool = True
    created_at: datetime
    ttl_millis: int = Field(0, description="Lifetime in milliseconds (0 = no expiry)")
    expires_at: Optional[datetime] = None
    session_id: Optional[str] = Field(None, description="Session that drew the overlay")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @classmethod
    def build(
        cls,
        overlay_id: str,
        region: Region,
        color: str,
        label: str,
        ttl_millis: int,
        click_through: bool,
        created_at: datetime,
        session_id: Optional[str] = None,
    ) -> "Overlay":
        expires_at = None
        if ttl_millis > 0:
            expires_at = created_at + timedelta(milliseconds=ttl_millis)
        return cls(
            id=overlay_id,
            region=region,
            color=color,
            label=label,
            click_through=click_through,
            created_at=created_at,
            ttl_millis=ttl_millis,
            expires_at=expires_at,
            session_id=session_id,
        )


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class Session(BaseModel):
    """A logical client session, independent of the transport connection."""
    id: str
    created_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    last_activity_at: datetime
    ended_reason: Optional[str] = None


class EventType(str, Enum):
    OVERLAY_CREATED = "overlay_created"
    OVERLAY_REMOVED = "overlay_removed"
    OVERLAY_EXPIRED = "overlay_expired"
    MODE_CHANGED = "mode_changed"
    SESSION_ENDED = "session_ended"


class Event(BaseModel):
    """State-change notification; never persisted."""
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class CaptureResult(BaseModel):
    """Screenshot saved by the screen adapter."""
    screenshot_ref: str = Field(description="Opaque reference usable by re_anchor_element")
    file_path: str = Field(description="Absolute path to the PNG file")
    width: int
    height: int
    region: Optional[Region] = None
    warnings: Optional[List[str]] = None


class MonitorInfo(BaseModel):
    index: int
    primary: bool
    x: int
    y: int
    width: int
    height: int
    scaling_factor: Optional[float] = None


class DisplayInfo(BaseModel):
    """Display layout as seen by the adapter (single monitor for now)."""
    display_server: str = Field(description="Display server type (x11, wayland, unknown)")
    monitors: List[MonitorInfo] = Field(default_factory=list)
    warnings: Optional[List[str]] = None


class AnchorResult(BaseModel):
    found: bool
    region: Optional[Region] = None
    moved: bool = False
    screenshot_ref: Optional[str] = Field(None, description="Fresh capture the element was searched in")


class ErrorInfo(BaseModel):
    code: str = Field(description="Stable machine-readable error code")
    message: str = Field(description="Human-readable explanation")
    details: Dict[str, Any] = Field(default_factory=dict)


class ConfirmationInfo(BaseModel):
    token: str = Field(description="Pass to confirm_action to run the deferred call")
    tool: str
    expires_at: datetime


class ToolResponse(BaseModel):
    """Envelope returned by every tool, identical on every transport."""
    success: bool
    tool: str
    status: str = Field(description="ok, confirmation_required or error")
    result: Optional[Dict[str, Any]] = Field(None, description="Tool-specific payload")
    confirmation: Optional[ConfirmationInfo] = None
    error: Optional[ErrorInfo] = None
