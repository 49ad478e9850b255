"""
Tool dispatcher.

``ToolDispatcher.invoke`` is the single entry point for every tool call,
whatever transport it arrived on. For each call it:

1. resolves the tool name against the fixed registry (``UnknownTool``),
2. validates parameters with the tool's pydantic schema (``InvalidParams``),
3. checks the caller's session (``NotFound`` / ``SessionExpired``),
4. asks the mode manager whether the tool's action category may run; when
   confirmation is required the call is parked behind a single-use token
   instead of running,
5. runs the tool against the overlay registry, session manager, event bus or
   screen adapter,
6. wraps the outcome (or the failure) in a ``ToolResponse``.

Adapter exceptions never cross this boundary unshaped: they are logged here
and returned as ``adapter_failure`` with a fixed message.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, NamedTuple, Optional, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from overlay_companion.adapter import ScreenAdapter
from overlay_companion.errors import (
    AdapterFailure,
    AlreadyConfirmed,
    InvalidParams,
    NotFound,
    PermissionDenied,
    TokenExpired,
    ToolError,
    UnknownTool,
)
from overlay_companion.events import EventBus
from overlay_companion.models import (
    ConfirmationInfo,
    ErrorInfo,
    EventType,
    Region,
    Session,
    ToolResponse,
    utcnow,
)
from overlay_companion.modes import PERMISSION_MATRIX, ActionCategory, Decision, Mode, ModeManager
from overlay_companion.overlays import OverlayRegistry, OverlaySpec, check_region
from overlay_companion.sessions import SessionManager

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = 60.0
_SPENT_TOKEN_HISTORY = 1024


# ---------------------------------------------------------------------------
# Parameter schemas
# ---------------------------------------------------------------------------

class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoParams(_Params):
    pass


class TakeScreenshotParams(_Params):
    region: Optional[Region] = Field(None, description="Capture only this region (full screen when omitted)")


class DrawOverlayParams(_Params):
    region: Region
    color: StrictStr = Field(min_length=1, description="Color name or #RRGGBB")
    label: StrictStr = Field("", max_length=500, description="Annotation text shown with the overlay")
    ttl_millis: StrictInt = Field(0, ge=0, le=86_400_000, description="Lifetime in ms (0 = until removed)")
    click_through: StrictBool = Field(True, description="Let clicks pass through the overlay")

    def to_spec(self) -> OverlaySpec:
        return OverlaySpec(**self.model_dump())


class RemoveOverlayParams(_Params):
    overlay_id: StrictStr = Field(min_length=1)


class BatchOverlayParams(_Params):
    overlays: List[DrawOverlayParams] = Field(min_length=1, max_length=100)


class ClickAtParams(_Params):
    x: StrictInt = Field(ge=0)
    y: StrictInt = Field(ge=0)
    button: Literal["left", "right", "middle"] = "left"
    clicks: StrictInt = Field(1, ge=1, le=3)


class TypeTextParams(_Params):
    text: StrictStr = Field(min_length=1, max_length=10_000)
    interval: float = Field(0.0, ge=0.0, le=1.0)


class SetClipboardParams(_Params):
    text: StrictStr = Field(max_length=100_000)


class SetModeParams(_Params):
    mode: Mode


class ConfirmActionParams(_Params):
    token: StrictStr = Field(min_length=1)


class ReAnchorParams(_Params):
    previous_region: Region
    screenshot_ref: StrictStr = Field(min_length=1)


class ComposeStep(_Params):
    action: Literal["click", "type", "set_clipboard", "wait"]
    x: Optional[StrictInt] = Field(None, ge=0)
    y: Optional[StrictInt] = Field(None, ge=0)
    button: Literal["left", "right", "middle"] = "left"
    clicks: StrictInt = Field(1, ge=1, le=3)
    text: Optional[StrictStr] = Field(None, max_length=10_000)
    interval: float = Field(0.0, ge=0.0, le=1.0)
    duration: float = Field(0.5, ge=0.0, le=5.0)

    @model_validator(mode="after")
    def _check_action_fields(self) -> "ComposeStep":
        if self.action == "click" and (self.x is None or self.y is None):
            raise ValueError("click steps need x and y")
        if self.action in ("type", "set_clipboard") and self.text is None:
            raise ValueError(f"{self.action} steps need text")
        return self


class ComposeActionsParams(_Params):
    steps: List[ComposeStep] = Field(min_length=1, max_length=50)


class SessionStatusParams(_Params):
    session_id: Optional[StrictStr] = None


class SubscribeEventsParams(_Params):
    types: Optional[List[EventType]] = Field(None, description="Event types to receive (all when omitted)")


class PollEventsParams(_Params):
    subscription_id: StrictStr = Field(min_length=1)
    max_events: StrictInt = Field(100, ge=1, le=1000)
    timeout_ms: StrictInt = Field(0, ge=0, le=30_000)


class UnsubscribeEventsParams(_Params):
    subscription_id: StrictStr = Field(min_length=1)


class ToolSpec(NamedTuple):
    name: str
    params: Type[_Params]
    category: Optional[ActionCategory]
    needs_session: bool = True


_O = ActionCategory.OBSERVE
_N = ActionCategory.ANNOTATE
_X = ActionCategory.ACT

TOOLS: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("take_screenshot", TakeScreenshotParams, _O),
        ToolSpec("draw_overlay", DrawOverlayParams, _N),
        ToolSpec("remove_overlay", RemoveOverlayParams, _N),
        ToolSpec("clear_overlays", NoParams, _N),
        ToolSpec("batch_overlay", BatchOverlayParams, _N),
        ToolSpec("click_at", ClickAtParams, _X),
        ToolSpec("type_text", TypeTextParams, _X),
        ToolSpec("get_clipboard", NoParams, _O),
        ToolSpec("set_clipboard", SetClipboardParams, _X),
        ToolSpec("get_display_info", NoParams, _O),
        ToolSpec("set_mode", SetModeParams, None),
        ToolSpec("confirm_action", ConfirmActionParams, None),
        ToolSpec("re_anchor_element", ReAnchorParams, _O),
        ToolSpec("compose_actions", ComposeActionsParams, ActionCategory.COMPOSE),
        ToolSpec("get_mode", NoParams, None),
        ToolSpec("list_overlays", NoParams, None),
        ToolSpec("open_session", NoParams, None, needs_session=False),
        ToolSpec("close_session", NoParams, None),
        ToolSpec("get_session_status", SessionStatusParams, None, needs_session=False),
        ToolSpec("subscribe_events", SubscribeEventsParams, None),
        ToolSpec("poll_events", PollEventsParams, None),
        ToolSpec("unsubscribe_events", UnsubscribeEventsParams, None),
    )
}


def _field_path(loc) -> str:
    return ".".join(str(part) for part in loc) or "<root>"


class PendingConfirmation(NamedTuple):
    token: str
    spec: ToolSpec
    params: _Params
    session_id: Optional[str]
    expires_at: datetime


class ToolDispatcher:
    def __init__(
        self,
        modes: ModeManager,
        overlays: OverlayRegistry,
        sessions: SessionManager,
        bus: EventBus,
        adapter: ScreenAdapter,
        token_ttl: float = DEFAULT_TOKEN_TTL,
        clear_overlays_on_session_end: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.modes = modes
        self.overlays = overlays
        self.sessions = sessions
        self.bus = bus
        self.adapter = adapter
        self.token_ttl = token_ttl
        self.clear_overlays_on_session_end = clear_overlays_on_session_end
        self._clock = clock
        self._token_lock = threading.Lock()
        self._pending: Dict[str, PendingConfirmation] = {}
        # token -> "confirmed" | "expired" | "cancelled"
        self._spent: "OrderedDict[str, str]" = OrderedDict()
        self._sub_lock = threading.Lock()
        self._subscription_owner: Dict[str, Optional[str]] = {}
        sessions.add_close_hook(self._on_session_closed)

    # -- entry point -------------------------------------------------------

    def invoke(self, tool_name: str, params: Optional[Dict[str, Any]] = None, session_id: Optional[str] = None) -> ToolResponse:
        try:
            spec = TOOLS.get(tool_name)
            if spec is None:
                raise UnknownTool(f"Unknown tool '{tool_name}'", {"tool": tool_name})
            parsed = self._validate(spec, params)
            if spec.needs_session and session_id is not None:
                self.sessions.touch(session_id)

            if spec.category is not None:
                decision = self.modes.check_permission(spec.category)
                if decision is Decision.REQUIRES_CONFIRMATION:
                    return self._defer(spec, parsed, session_id)

            if spec.name == "confirm_action":
                return self._confirm(parsed.token, session_id)

            result = self._execute(spec, parsed, session_id)
            return ToolResponse(success=True, tool=tool_name, status="ok", result=result)
        except ToolError as exc:
            return self._error_response(tool_name, exc)
        except Exception:  # noqa: BLE001 - a tool call must never take the server down
            logger.exception("Unexpected failure in tool '%s'", tool_name)
            return ToolResponse(
                success=False,
                tool=tool_name,
                status="error",
                error=ErrorInfo(code="internal_error", message=f"Internal error while running '{tool_name}'"),
            )

    @staticmethod
    def tool_names() -> List[str]:
        return list(TOOLS)

    def _validate(self, spec: ToolSpec, params: Optional[Dict[str, Any]]) -> _Params:
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidParams("Parameters must be an object", ["<root>"])
        try:
            return spec.params.model_validate(params)
        except ValidationError as exc:
            errors = [
                {"field": _field_path(err["loc"]), "message": err["msg"]}
                for err in exc.errors(include_url=False)
            ]
            fields = sorted({e["field"] for e in errors})
            raise InvalidParams(
                f"Invalid parameters for '{spec.name}': {', '.join(fields)}",
                fields,
                errors,
            ) from None

    @staticmethod
    def _error_response(tool_name: str, exc: ToolError) -> ToolResponse:
        return ToolResponse(
            success=False,
            tool=tool_name,
            status="error",
            error=ErrorInfo(code=exc.code, message=exc.message, details=exc.details),
        )

    # -- confirmation tokens -----------------------------------------------

    def _defer(self, spec: ToolSpec, parsed: _Params, session_id: Optional[str]) -> ToolResponse:
        now = self._clock()
        pending = PendingConfirmation(
            token=uuid.uuid4().hex,
            spec=spec,
            params=parsed,
            session_id=session_id,
            expires_at=now + timedelta(seconds=self.token_ttl),
        )
        with self._token_lock:
            self._expire_tokens(now)
            self._pending[pending.token] = pending
        logger.info("Tool '%s' awaiting confirmation", spec.name)
        return ToolResponse(
            success=True,
            tool=spec.name,
            status="confirmation_required",
            confirmation=ConfirmationInfo(token=pending.token, tool=spec.name, expires_at=pending.expires_at),
        )

    def _confirm(self, token: str, session_id: Optional[str]) -> ToolResponse:
        now = self._clock()
        with self._token_lock:
            self._expire_tokens(now)
            pending = self._pending.get(token)
            if pending is None:
                outcome = self._spent.get(token)
                if outcome == "confirmed":
                    raise AlreadyConfirmed("Confirmation token was already used", {"token": token})
                raise TokenExpired("Confirmation token is unknown, expired or cancelled", {"token": token})
            if pending.session_id != session_id:
                raise PermissionDenied("Confirmation token belongs to a different session", {"token": token})
            del self._pending[token]
            self._mark_spent(token, "confirmed")

        spec = pending.spec
        # The mode may have changed since the token was issued
        self.modes.check_permission(spec.category)
        result = self._execute(spec, pending.params, session_id)
        logger.info("Confirmed tool '%s' executed", spec.name)
        return ToolResponse(
            success=True,
            tool="confirm_action",
            status="ok",
            result={"confirmed_tool": spec.name, "result": result},
        )

    def _expire_tokens(self, now: datetime) -> None:
        for token in [t for t, p in self._pending.items() if p.expires_at <= now]:
            del self._pending[token]
            self._mark_spent(token, "expired")

    def _mark_spent(self, token: str, outcome: str) -> None:
        self._spent[token] = outcome
        while len(self._spent) > _SPENT_TOKEN_HISTORY:
            self._spent.popitem(last=False)

    def pending_tokens(self, session_id: Optional[str] = None) -> List[str]:
        with self._token_lock:
            return [t for t, p in self._pending.items() if p.session_id == session_id]

    def _on_session_closed(self, session: Session) -> None:
        with self._token_lock:
            cancelled = [t for t, p in self._pending.items() if p.session_id == session.id]
            for token in cancelled:
                del self._pending[token]
                self._mark_spent(token, "cancelled")
        with self._sub_lock:
            owned = [s for s, owner in self._subscription_owner.items() if owner == session.id]
            for subscription_id in owned:
                del self._subscription_owner[subscription_id]
        for subscription_id in owned:
            subscription = self.bus.get(subscription_id)
            if subscription is not None:
                self.bus.unsubscribe(subscription)
        if self.clear_overlays_on_session_end:
            self.overlays.remove_by_session(session.id)
        if cancelled or owned:
            logger.info(
                "Session %s closed: cancelled %d confirmation(s), %d subscription(s)",
                session.id,
                len(cancelled),
                len(owned),
            )

    # -- execution -----------------------------------------------------------

    def _execute(self, spec: ToolSpec, params: _Params, session_id: Optional[str]) -> Dict[str, Any]:
        handler = getattr(self, f"_tool_{spec.name}")
        return handler(params, session_id)

    @staticmethod
    def _adapter_call(operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ToolError:
            raise
        except Exception:  # noqa: BLE001 - reshaped below, raw text stays in the log
            logger.exception("Screen adapter failed during '%s'", operation)
            raise AdapterFailure(operation) from None

    def _tool_take_screenshot(self, params: TakeScreenshotParams, session_id: Optional[str]) -> Dict[str, Any]:
        if params.region is not None:
            check_region(params.region)
        capture = self._adapter_call("capture", self.adapter.capture, params.region)
        return capture.model_dump(mode="json")

    def _tool_draw_overlay(self, params: DrawOverlayParams, session_id: Optional[str]) -> Dict[str, Any]:
        spec = params.to_spec()
        overlay = self.overlays.create(
            spec.region,
            spec.color,
            spec.label,
            spec.ttl_millis,
            spec.click_through,
            session_id=session_id,
        )
        return {"overlay": overlay.model_dump(mode="json")}

    def _tool_remove_overlay(self, params: RemoveOverlayParams, session_id: Optional[str]) -> Dict[str, Any]:
        self.overlays.remove(params.overlay_id)
        return {"removed": params.overlay_id}

    def _tool_clear_overlays(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        return {"removed_count": self.overlays.clear_all()}

    def _tool_batch_overlay(self, params: BatchOverlayParams, session_id: Optional[str]) -> Dict[str, Any]:
        created = self.overlays.create_batch([p.to_spec() for p in params.overlays], session_id=session_id)
        return {"overlays": [o.model_dump(mode="json") for o in created], "count": len(created)}

    def _tool_list_overlays(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        active = self.overlays.list_active()
        return {"overlays": [o.model_dump(mode="json") for o in active], "count": len(active)}

    def _tool_click_at(self, params: ClickAtParams, session_id: Optional[str]) -> Dict[str, Any]:
        self._adapter_call("click", self.adapter.click, params.x, params.y, params.button, params.clicks)
        return {"x": params.x, "y": params.y, "button": params.button, "clicks": params.clicks}

    def _tool_type_text(self, params: TypeTextParams, session_id: Optional[str]) -> Dict[str, Any]:
        self._adapter_call("type_text", self.adapter.type_text, params.text, params.interval)
        return {"characters": len(params.text)}

    def _tool_get_clipboard(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        return {"text": self._adapter_call("get_clipboard", self.adapter.get_clipboard)}

    def _tool_set_clipboard(self, params: SetClipboardParams, session_id: Optional[str]) -> Dict[str, Any]:
        self._adapter_call("set_clipboard", self.adapter.set_clipboard, params.text)
        return {"characters": len(params.text)}

    def _tool_get_display_info(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        info = self._adapter_call("display_info", self.adapter.display_info)
        return info.model_dump(mode="json")

    def _tool_re_anchor_element(self, params: ReAnchorParams, session_id: Optional[str]) -> Dict[str, Any]:
        check_region(params.previous_region)
        anchor = self._adapter_call("re_anchor", self.adapter.re_anchor, params.previous_region, params.screenshot_ref)
        return anchor.model_dump(mode="json")

    def _tool_set_mode(self, params: SetModeParams, session_id: Optional[str]) -> Dict[str, Any]:
        previous = self.modes.set_mode(params.mode)
        return {"previous": previous.value, "mode": params.mode.value}

    def _tool_get_mode(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        mode = self.modes.get_mode()
        return {
            "mode": mode.value,
            "permissions": {c.value: d.value for c, d in PERMISSION_MATRIX[mode].items()},
        }

    def _tool_compose_actions(self, params: ComposeActionsParams, session_id: Optional[str]) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []
        for index, step in enumerate(params.steps):
            try:
                if step.action == "click":
                    self.adapter.click(step.x, step.y, step.button, step.clicks)
                    results.append({"action": "click", "x": step.x, "y": step.y})
                elif step.action == "type":
                    self.adapter.type_text(step.text, step.interval)
                    results.append({"action": "type", "characters": len(step.text)})
                elif step.action == "set_clipboard":
                    self.adapter.set_clipboard(step.text)
                    results.append({"action": "set_clipboard", "characters": len(step.text)})
                else:
                    time.sleep(step.duration)
                    results.append({"action": "wait", "duration": step.duration})
            except Exception:  # noqa: BLE001 - stop on first failure and report where
                logger.exception("compose_actions step %d (%s) failed", index, step.action)
                raise AdapterFailure(step.action, index=index, steps_completed=index) from None
        return {"steps_completed": len(results), "total_steps": len(params.steps), "results": results}

    # -- sessions ------------------------------------------------------------

    def _tool_open_session(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        return {"session": self.sessions.open().model_dump(mode="json")}

    def _tool_close_session(self, params: NoParams, session_id: Optional[str]) -> Dict[str, Any]:
        if session_id is None:
            raise NotFound("No session is bound to this connection")
        return {"session": self.sessions.close(session_id).model_dump(mode="json")}

    def _tool_get_session_status(self, params: SessionStatusParams, session_id: Optional[str]) -> Dict[str, Any]:
        target = params.session_id or session_id
        if target is None:
            raise NotFound("No session is bound to this connection")
        return {"session": self.sessions.status(target).model_dump(mode="json")}

    # -- events --------------------------------------------------------------

    def _tool_subscribe_events(self, params: SubscribeEventsParams, session_id: Optional[str]) -> Dict[str, Any]:
        subscription = self.bus.subscribe(params.types)
        with self._sub_lock:
            self._subscription_owner[subscription.id] = session_id
        types = sorted(t.value for t in subscription.types) if subscription.types else None
        return {"subscription_id": subscription.id, "types": types}

    def _owned_subscription(self, subscription_id: str, session_id: Optional[str]):
        with self._sub_lock:
            known = subscription_id in self._subscription_owner
            owner = self._subscription_owner.get(subscription_id)
        subscription = self.bus.get(subscription_id) if known and owner == session_id else None
        if subscription is None:
            raise NotFound(f"Subscription '{subscription_id}' not found", {"subscription_id": subscription_id})
        return subscription

    def _tool_poll_events(self, params: PollEventsParams, session_id: Optional[str]) -> Dict[str, Any]:
        subscription = self._owned_subscription(params.subscription_id, session_id)
        events = subscription.poll(params.max_events, params.timeout_ms / 1000.0)
        return {
            "events": [e.model_dump(mode="json") for e in events],
            "dropped": subscription.dropped,
        }

    def _tool_unsubscribe_events(self, params: UnsubscribeEventsParams, session_id: Optional[str]) -> Dict[str, Any]:
        subscription = self._owned_subscription(params.subscription_id, session_id)
        with self._sub_lock:
            self._subscription_owner.pop(subscription.id, None)
        self.bus.unsubscribe(subscription)
        return {"unsubscribed": subscription.id}
