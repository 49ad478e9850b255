"""
Server configuration.

Values come from the model defaults, then ``OVERLAY_COMPANION_*`` environment
variables (``PORT`` is honoured too), then command-line flags.
"""

import argparse
import logging
import os
from typing import Dict, List, Mapping, Optional, Sequence, Set

from pydantic import BaseModel, Field, ValidationError, field_validator

from overlay_companion.modes import Mode

TRANSPORTS = ("http", "stdio")

_ENV_PREFIX = "OVERLAY_COMPANION_"

# env suffix -> config field
_ENV_FIELDS: Dict[str, str] = {
    "HOST": "host",
    "PORT": "port",
    "TRANSPORTS": "transports",
    "IDLE_TIMEOUT": "idle_session_timeout",
    "SWEEP_INTERVAL_MS": "overlay_sweep_interval_ms",
    "TOKEN_TTL": "confirmation_token_ttl",
    "MODE": "initial_mode",
    "EVENT_QUEUE_SIZE": "event_queue_size",
    "CAPTURE_DIR": "capture_dir",
    "CLEAR_OVERLAYS_ON_SESSION_END": "clear_overlays_on_session_end",
    "LOG_LEVEL": "log_level",
}


class ServerConfig(BaseModel):
    host: str = Field("localhost", description="Bind address for the HTTP transport")
    port: int = Field(3000, ge=1, le=65535, description="Port for the HTTP transport")
    transports: Set[str] = Field(default_factory=lambda: {"http"}, description="Enabled transports")
    idle_session_timeout: float = Field(900.0, ge=0, description="Seconds before an idle session ends (0 = never)")
    overlay_sweep_interval_ms: int = Field(100, gt=0, le=1000, description="Expiry sweep period in ms")
    confirmation_token_ttl: float = Field(60.0, gt=0, description="Seconds a confirmation token stays valid")
    initial_mode: Mode = Mode.ASSIST
    event_queue_size: int = Field(256, ge=1, description="Per-subscriber event backlog before dropping")
    capture_dir: Optional[str] = Field(None, description="Where screenshots are written")
    clear_overlays_on_session_end: bool = False
    log_level: str = "INFO"

    @field_validator("transports", mode="before")
    @classmethod
    def _split_transports(cls, value):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("transports")
    @classmethod
    def _known_transports(cls, value: Set[str]) -> Set[str]:
        unknown = set(value) - set(TRANSPORTS)
        if unknown:
            raise ValueError(f"unknown transport(s): {', '.join(sorted(unknown))}")
        if not value:
            raise ValueError("at least one transport must be enabled")
        return set(value)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @property
    def sweep_interval(self) -> float:
        return self.overlay_sweep_interval_ms / 1000.0


def _env_values(environ: Mapping[str, str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if environ.get("PORT"):
        values["port"] = environ["PORT"]
    for suffix, field in _ENV_FIELDS.items():
        raw = environ.get(_ENV_PREFIX + suffix)
        if raw:
            values[field] = raw
    return values


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="overlay-companion-mcp",
        description="MCP server for screen overlays, screenshots and mode-gated input",
    )
    parser.add_argument("--host", help="Bind address for the HTTP transport")
    parser.add_argument("--port", type=int, help="Port for the HTTP transport")
    parser.add_argument(
        "--transport",
        dest="transports",
        action="append",
        choices=TRANSPORTS,
        help="Transport to enable (repeat for both)",
    )
    parser.add_argument("--idle-timeout", dest="idle_session_timeout", type=float, help="Idle session timeout in seconds")
    parser.add_argument("--sweep-interval-ms", dest="overlay_sweep_interval_ms", type=int, help="Overlay expiry sweep period")
    parser.add_argument("--token-ttl", dest="confirmation_token_ttl", type=float, help="Confirmation token lifetime in seconds")
    parser.add_argument("--mode", dest="initial_mode", choices=[m.value for m in Mode], help="Mode at startup")
    parser.add_argument("--event-queue-size", type=int, help="Per-subscriber event backlog")
    parser.add_argument("--capture-dir", help="Directory for screenshots")
    parser.add_argument(
        "--clear-overlays-on-session-end",
        action="store_true",
        default=None,
        help="Remove a session's overlays when it ends",
    )
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    return parser


def load_config(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServerConfig:
    """Build the configuration from the environment and command line."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    values: Dict[str, object] = dict(_env_values(os.environ if environ is None else environ))
    values.update({k: v for k, v in vars(args).items() if v is not None})
    try:
        return ServerConfig(**values)
    except ValidationError as exc:
        problems: List[str] = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors(include_url=False)
        ]
        parser.error("invalid configuration: " + "; ".join(problems))
        raise  # parser.error exits
