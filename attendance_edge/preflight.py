"""
Preflight checks for the attendance edge node.
"""

from __future__ import annotations

import argparse
import socket
import sys
from pathlib import Path
from typing import List, Optional

from .config import Settings, load_settings, resolve_lane_params
from .core.errors import ConfigError
from .events.record_client import RecordServiceClient


def _check_tcp(host: str, port: int, timeout: float = 2.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _resolve_path(path_str: str) -> Path:
    path = Path(path_str).expanduser()
    if path.is_absolute():
        return path
    return (Path.cwd() / path).resolve()


def _check_writable_dir(path_str: str, label: str) -> List[str]:
    directory = _resolve_path(path_str).parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        return [f"{label} directory not writable: {directory} ({exc})"]
    marker = directory / ".preflight"
    try:
        marker.write_text("ok", encoding="utf-8")
        marker.unlink()
    except OSError as exc:
        return [f"{label} directory not writable: {directory} ({exc})"]
    return []


def run_checks(settings: Settings, *, check_network: bool = True) -> List[str]:
    """Return a list of problems; empty means the node can start."""
    errors: List[str] = []

    for cam in settings.cameras:
        if not cam.enabled:
            continue
        try:
            resolve_lane_params(cam, settings)
        except ConfigError as exc:
            errors.append(str(exc))
        if cam.test_video:
            resolved = _resolve_path(cam.test_video)
            if not resolved.exists():
                errors.append(f"Test video missing for camera {cam.id}: {resolved}")

    if settings.enrollment.source == "file":
        if not settings.enrollment.file:
            errors.append("enrollment.source is 'file' but enrollment.file is not set")
        elif not _resolve_path(settings.enrollment.file).exists():
            errors.append(f"Enrollment file missing: {_resolve_path(settings.enrollment.file)}")

    errors.extend(_check_writable_dir(settings.delivery.spool_path, "Spool"))
    errors.extend(_check_writable_dir(settings.enrollment.cache_path, "Enrollment cache"))
    errors.extend(_check_writable_dir(settings.watchdog.health_path, "Health file"))
    if settings.finalizer.enabled:
        errors.extend(_check_writable_dir(settings.finalizer.state_path, "Finalizer state"))

    if check_network:
        if settings.mqtt.enabled and not _check_tcp(settings.mqtt.host, settings.mqtt.port):
            errors.append(f"MQTT broker not reachable at {settings.mqtt.host}:{settings.mqtt.port}")
        client = RecordServiceClient(
            settings.backend.url, token=settings.backend.token, timeout_sec=settings.backend.timeout_sec
        )
        try:
            if not client.ping():
                errors.append(f"Record service not reachable at {settings.backend.url}")
        finally:
            client.close()
    return errors


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Attendance edge preflight checks")
    parser.add_argument("--config", default="config/attendance_edge.yaml")
    parser.add_argument("--offline", action="store_true", help="Skip broker and record service checks")
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    try:
        settings = load_settings(args.config)
    except (OSError, ConfigError) as exc:
        print(f"Preflight checks failed:\n- {exc}")
        return 1
    errors = run_checks(settings, check_network=not args.offline)

    if errors:
        print("Preflight checks failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Preflight checks passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
