"""
HTTP client for the record-of-truth service.

Every call raises ``DeliveryError`` on failure. Connection errors, timeouts,
5xx, 408 and 429 are retryable; any other 4xx means the request itself is
wrong and retrying it cannot help.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from ..core.errors import DeliveryError
from ..models.event import AttendanceEvent, SlotFinalizeRequest

_RETRYABLE_4XX = {408, 429}


class RecordServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_sec: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.base_url = base_url.rstrip("/")
        self.timeout = (min(5.0, float(timeout_sec)), float(timeout_sec))
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, *, json: Any = None, headers: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=json, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DeliveryError(f"{method} {path} failed: {exc}") from exc

        if response.status_code // 100 != 2:
            status = response.status_code
            retryable = status >= 500 or status in _RETRYABLE_4XX
            detail = (response.text or "")[:200]
            raise DeliveryError(f"{method} {path} returned {status}: {detail}", status_code=status, retryable=retryable)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def post_attendance(self, event: AttendanceEvent) -> None:
        """Deliver one attendance event. The service dedupes on (identity_id, slot_id)."""
        self._request(
            "POST",
            "/api/v1/attendance/events",
            json=event.model_dump(mode="json"),
            headers={"Idempotency-Key": event.idempotency_key()},
        )

    def finalize_slot(self, request: SlotFinalizeRequest) -> None:
        self._request(
            "POST",
            f"/api/v1/slots/{request.slot_id}/finalize",
            json=request.model_dump(mode="json", exclude_none=True),
        )

    def fetch_enrollment_snapshot(self) -> Optional[dict]:
        payload = self._request("GET", "/api/v1/enrollment/snapshot")
        if payload is not None and not isinstance(payload, dict):
            raise DeliveryError("enrollment snapshot response is not an object", retryable=False)
        return payload

    def fetch_cameras(self) -> List[dict]:
        payload = self._request("GET", "/api/v1/cameras")
        if isinstance(payload, dict):
            cameras = payload.get("cameras")
        else:
            cameras = payload
        if not isinstance(cameras, list):
            return []
        return [cam for cam in cameras if isinstance(cam, dict)]

    def ping(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=self.timeout)
        except requests.RequestException as exc:
            self.logger.debug("Record service ping failed: %s", exc)
            return False
        return response.status_code < 500

    def close(self) -> None:
        self.session.close()


__all__ = ["RecordServiceClient"]
