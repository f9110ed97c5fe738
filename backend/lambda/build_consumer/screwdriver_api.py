"""screwdriver_api.py — Screwdriver build API client (stats and status updates).

PUTs to ``<apiUri>/v4/builds/<id>`` with the build's bearer token. Connection
errors, 429 and 5xx responses are retried with linear jitter backoff.
"""
from __future__ import annotations

import datetime as dt
import http.client
import json
import random
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from config import (
    SDAPI_MAXRETRIES,
    SDAPI_RETRY_WAIT_MAX_SECONDS,
    SDAPI_RETRY_WAIT_MIN_SECONDS,
    SDAPI_TIMEOUT_SECS,
    logger,
)

__all__ = [
    "BuildStatus",
    "ScrewdriverAPI",
    "ScrewdriverAPIError",
    "new_api",
]

API_VERSION = "v4"
_RETRIABLE_STATUS = {429, 500, 502, 503, 504}


class BuildStatus:
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    ALL = frozenset({RUNNING, SUCCESS, FAILURE, ABORTED})


class ScrewdriverAPIError(RuntimeError):
    def __init__(self, status_code: int, reason: str = "", message: str = ""):
        self.status_code = status_code
        self.reason = reason
        self.message = message
        super().__init__(f"{status_code} {reason}: {message}")


def _json_default(value: Any) -> Any:
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        return value.isoformat()
    return str(value)


class ScrewdriverAPI:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        max_retries: int = SDAPI_MAXRETRIES,
        timeout: float = SDAPI_TIMEOUT_SECS,
        retry_wait_min: float = SDAPI_RETRY_WAIT_MIN_SECONDS,
        retry_wait_max: float = SDAPI_RETRY_WAIT_MAX_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.max_retries = max(0, int(max_retries))
        self.timeout = timeout
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max

    def make_url(self, path: str) -> str:
        return f"{self.base_url}/{API_VERSION}/{path}"

    def get_api_url(self) -> str:
        return self.make_url("")

    # -- transport ---------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        """Linear jitter: a random wait in [min, max] scaled by the attempt."""
        return random.uniform(self.retry_wait_min, self.retry_wait_max) * attempt

    def _write(self, method: str, url: str, payload: Dict[str, Any]) -> bytes:
        data = json.dumps(payload, default=_json_default).encode("utf-8")
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        attempt = 0
        while True:
            attempt += 1
            req = urllib.request.Request(url, data=data, method=method, headers=headers)
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                    return resp.read()
            except urllib.error.HTTPError as exc:
                body = exc.read() or b""
                if exc.code in _RETRIABLE_STATUS and attempt <= self.max_retries:
                    logger.warning("Received %s from %s %s (attempt %s), retrying", exc.code, method, url, attempt)
                    time.sleep(self._backoff(attempt))
                    continue
                raise self._api_error(exc.code, body, method, url) from exc
            except (OSError, http.client.HTTPException) as exc:
                # URLError while sending; raw socket or http.client errors while reading.
                reason = exc.reason if isinstance(exc, urllib.error.URLError) else repr(exc)
                if attempt <= self.max_retries:
                    logger.warning("Request error from %s %s (attempt %s): %s", method, url, attempt, reason)
                    time.sleep(self._backoff(attempt))
                    continue
                raise ScrewdriverAPIError(0, "RequestError", f"{method} {url}: {reason}") from exc

    @staticmethod
    def _api_error(status_code: int, body: bytes, method: str, url: str) -> ScrewdriverAPIError:
        logger.warning("Received response %s from %s %s", status_code, method, url)
        try:
            parsed = json.loads(body.decode("utf-8", errors="replace"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ScrewdriverAPIError(status_code, "UnparseableResponse", body.decode("utf-8", errors="replace"))
        if not isinstance(parsed, dict):
            parsed = {}
        return ScrewdriverAPIError(
            int(parsed.get("statusCode") or status_code),
            str(parsed.get("error") or ""),
            str(parsed.get("message") or ""),
        )

    # -- builds ------------------------------------------------------------

    def update_build(self, stats: Dict[str, Any], build_id: int, status_message: str = "") -> None:
        """PUT build stats; stats must carry hostname and imagePullStartTime."""
        if not stats.get("hostname"):
            raise ValueError(f"hostname value is empty or invalid: {stats.get('hostname')!r}")
        if stats.get("imagePullStartTime") is None:
            raise ValueError("imagePullStartTime value is empty or invalid: None")

        payload: Dict[str, Any] = {"stats": stats}
        if status_message:
            payload["statusMessage"] = status_message
        logger.info("Updating build %s stats: %s", build_id, json.dumps(payload, default=_json_default))
        self._write("PUT", self.make_url(f"builds/{int(build_id)}"), payload)

    def update_build_status(
        self,
        status: str,
        meta: Optional[Dict[str, Any]],
        build_id: int,
        status_message: str = "",
    ) -> None:
        if status not in BuildStatus.ALL:
            raise ValueError(f"Invalid build status: {status}")
        payload: Dict[str, Any] = {"status": status, "meta": meta or {}}
        if status_message:
            payload["statusMessage"] = status_message
        self._write("PUT", self.make_url(f"builds/{int(build_id)}"), payload)


def new_api(url: str, token: str) -> ScrewdriverAPI:
    """Build a client with the SDAPI_* environment settings."""
    parsed = urllib.parse.urlparse(url or "")
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"Invalid Screwdriver API url: {url!r}")
    if not token:
        raise ValueError("Screwdriver API token is required")
    return ScrewdriverAPI(
        url,
        token,
        max_retries=SDAPI_MAXRETRIES,
        timeout=SDAPI_TIMEOUT_SECS,
    )
