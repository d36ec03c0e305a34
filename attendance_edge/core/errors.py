"""
Error types and shared error-handling helpers for the attendance edge node.

Background loops never let an exception escape: they report it through
``log_exception`` (which appends ``key=value`` context) and carry on.
State files are written with ``safe_json_dump_atomic`` so a crash mid-write
leaves the previous file in place.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar

T = TypeVar("T")


class ConfigError(ValueError):
    """Invalid or missing configuration. ``camera_id`` is set when only one lane is affected."""

    def __init__(self, message: str, *, camera_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.camera_id = camera_id


class DeliveryError(RuntimeError):
    """Failed call to the record-of-truth service."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class EnrollmentError(RuntimeError):
    """Enrollment snapshot could not be parsed or indexed."""


def _context_suffix(extra: Optional[Mapping[str, Any]]) -> str:
    pairs = [f"{key}={value}" for key, value in (extra or {}).items() if value is not None]
    return (" " + " ".join(pairs)) if pairs else ""


def log_exception(
    logger: logging.Logger,
    msg: str,
    *,
    extra: Optional[Mapping[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> None:
    """Log ``msg`` at error level with a traceback and ``key=value`` context."""
    context = _context_suffix(extra)
    if exc is None:
        logger.exception("%s%s", msg, context)
    else:
        logger.error("%s%s: %s", msg, context, exc, exc_info=exc)


def safe_json_load(
    path: str | Path,
    default: T,
    *,
    logger: Optional[logging.Logger] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> T:
    """Read a JSON file. A missing file or unreadable content yields ``default``."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        if logger is not None:
            log_exception(logger, "Cannot read JSON file", extra={"path": source, **(context or {})}, exc=exc)
        return default
    try:
        return json.loads(text)
    except ValueError as exc:
        if logger is not None:
            log_exception(logger, "Corrupt JSON file", extra={"path": source, **(context or {})}, exc=exc)
        return default


def safe_json_dump_atomic(
    path: str | Path,
    data: Any,
    *,
    logger: Optional[logging.Logger] = None,
    context: Optional[Mapping[str, Any]] = None,
    indent: int = 2,
) -> bool:
    """
    Write ``data`` as JSON next to ``path`` and rename it into place.

    Returns False (after logging) when the directory cannot be created, the
    data is not serialisable or the rename fails.
    """
    target = Path(path)
    scratch: Optional[str] = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handle, scratch = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
        with os.fdopen(handle, "w", encoding="utf-8") as out:
            json.dump(data, out, indent=indent, default=str)
            out.flush()
            os.fsync(out.fileno())
        os.replace(scratch, target)
        scratch = None
        return True
    except (OSError, TypeError, ValueError) as exc:
        if logger is not None:
            log_exception(logger, "Atomic JSON write failed", extra={"path": target, **(context or {})}, exc=exc)
        return False
    finally:
        if scratch is not None:
            try:
                os.unlink(scratch)
            except OSError:
                logging.getLogger("errors").warning("Could not remove scratch file %s", scratch)


def guarded_call(
    name: str,
    fn: Callable[[], T],
    *,
    fallback: Optional[T] = None,
    logger: Optional[logging.Logger] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> Optional[T]:
    """Call ``fn``; on any exception log it under ``name`` and return ``fallback``."""
    try:
        return fn()
    except Exception as exc:
        if logger is not None:
            log_exception(logger, f"{name} failed", extra=context, exc=exc)
        return fallback


__all__ = [
    "ConfigError",
    "DeliveryError",
    "EnrollmentError",
    "guarded_call",
    "log_exception",
    "safe_json_dump_atomic",
    "safe_json_load",
]
