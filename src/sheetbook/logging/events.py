"""Unified event schema and module-level emit helpers.

All timestamps use UTC ISO-8601 with ``Z`` suffix.  The ``emit()``
family of functions is safe to call from any context -- failures are
swallowed and printed to stderr.
"""

from __future__ import annotations

import re
import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Workspace lifecycle
    sheet_parsed = "sheet_parsed"
    sheet_parse_failed = "sheet_parse_failed"
    workspace_saved = "workspace_saved"
    workspace_reset = "workspace_reset"

    # Formulas
    formula_registered = "formula_registered"
    formula_rejected = "formula_rejected"

    # Import lifecycle
    import_started = "import_started"
    import_completed = "import_completed"
    import_sheet_failed = "import_sheet_failed"
    import_sheet_truncated = "import_sheet_truncated"
    period_deleted = "period_deleted"

    # Reads
    monthly_view = "monthly_view"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

SHEET_PARSE_ERROR = "sheet_parse_error"
FORMULA_CYCLE = "formula_cycle"
FORMULA_OPERAND = "formula_operand"
SHEET_PERSIST_FAILED = "sheet_persist_failed"
SHEET_ROWS_TRUNCATED = "sheet_rows_truncated"


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_SENSITIVE_KEY_RE = re.compile(
    r"(password|passwd|secret|token|api_key|apikey|authorization|cookie"
    r"|session_id|bearer)",
    re.IGNORECASE,
)

_MAX_VALUE_LEN = 256


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with sensitive values redacted.

    Rules:
    - Keys matching sensitive patterns have their values replaced with
      ``"[REDACTED]"``.
    - String values longer than 256 chars are truncated.
    """
    return _redact_dict(context)


def _redact_dict(d: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in d.items():
        if _SENSITIVE_KEY_RE.search(k):
            out[k] = "[REDACTED]"
        elif isinstance(v, dict):
            out[k] = _redact_dict(v)
        elif isinstance(v, list):
            out[k] = [_redact_value(item) for item in v]
        else:
            out[k] = _redact_value(v)
    return out


def _redact_value(v: Any) -> Any:
    if isinstance(v, dict):
        return _redact_dict(v)
    if isinstance(v, str) and len(v) > _MAX_VALUE_LEN:
        return v[:_MAX_VALUE_LEN] + "...[truncated]"
    return v


# ---------------------------------------------------------------------------
# Attribution invariants
# ---------------------------------------------------------------------------

_IMPORT_EVENT_REQUIRED = {"owner_id", "target_month"}

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.import_started.value: _IMPORT_EVENT_REQUIRED,
    EventType.import_completed.value: _IMPORT_EVENT_REQUIRED,
    EventType.import_sheet_failed.value: _IMPORT_EVENT_REQUIRED | {"sheet_name"},
    EventType.import_sheet_truncated.value: _IMPORT_EVENT_REQUIRED | {"sheet_name"},
    EventType.period_deleted.value: _IMPORT_EVENT_REQUIRED,
    EventType.formula_registered.value: {"sheet_name", "result_column"},
    EventType.formula_rejected.value: {"sheet_name"},
}


def _validate_attribution(event: SheetbookEvent) -> SheetbookEvent:
    """Check required context keys; downgrade to warning if missing."""
    etype = event.event_type.value if isinstance(event.event_type, EventType) else event.event_type
    required = _EVENT_REQUIRED_KEYS.get(etype, set())
    if not required:
        return event
    missing = required - set(event.context.keys())
    if missing:
        ctx = dict(event.context)
        ctx["_missing_attribution"] = sorted(missing)
        return SheetbookEvent(
            schema_version=event.schema_version,
            ts=event.ts,
            level=EventLevel.warning,
            event_type=event.event_type,
            context=ctx,
            message=event.message,
            error_code=event.error_code,
        )
    return event


def make_import_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    owner_id: str,
    target_year: int,
    target_month: int,
    sheet_name: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> SheetbookEvent:
    """Build an event with guaranteed period-slot attribution context."""
    ctx: dict[str, Any] = {
        "owner_id": owner_id,
        "target_month": f"{target_year:04d}-{target_month:02d}",
    }
    if sheet_name is not None:
        ctx["sheet_name"] = sheet_name
    if extra:
        ctx.update(extra)
    return SheetbookEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=ctx,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SheetbookEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

_sink: Any = None  # EventSink | None


def set_project_dir(project_dir: Any) -> None:
    """Configure the module-level event sink for a project directory.

    Call this early in a CLI command or at server startup.  Until it is
    called, ``emit()`` silently discards events.
    """
    global _sink
    from pathlib import Path

    from sheetbook.logging.sink import EventSink
    from sheetbook.project import load_project_config

    fsync = False
    tail_bytes = None
    try:
        cfg = load_project_config(Path(project_dir))
        fsync = bool(cfg.get("logging_fsync", False))
        tb = cfg.get("logging_tail_bytes")
        if tb is not None:
            tail_bytes = int(tb)
    except (OSError, ValueError):
        pass

    _sink = EventSink(Path(project_dir), fsync=fsync, tail_bytes=tail_bytes)


def clear_sink() -> None:
    """Detach the module-level sink (events are discarded afterwards)."""
    global _sink
    _sink = None


def get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[sheetbook] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: SheetbookEvent, *, import_id: str | None = None) -> None:
    """Write an event to the global log and optionally to a per-import log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.

    Applies secret redaction and attribution validation before writing.
    """
    try:
        sink = get_sink()
        if sink is None:
            return
        event = SheetbookEvent(
            schema_version=event.schema_version,
            ts=event.ts,
            level=event.level,
            event_type=event.event_type,
            context=redact_context(event.context),
            message=event.message,
            error_code=event.error_code,
        )
        event = _validate_attribution(event)
        sink.write(event, import_id=import_id)
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    import_id: str | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    emit(
        SheetbookEvent(
            level=EventLevel.info,
            event_type=event_type,
            message=message,
            context=context or {},
        ),
        import_id=import_id,
    )


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    import_id: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    emit(
        SheetbookEvent(
            level=EventLevel.warning,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        ),
        import_id=import_id,
    )
