"""build_message.py — Decode Kafka build messages into typed build configs.

A record value is base64(JSON) of the form::

    {"job": "start", "executorType": "eks", "buildConfig": {..., "provider": {...}}}

Top-level config defaults are seeded before the message is overlaid, provider
defaults are filled in afterwards for absent keys only. JSON integers stay
``int`` and non-integral numbers become ``Decimal``, so build ids, job ids
and timeouts never pass through ``float``.
"""
from __future__ import annotations

import base64
import binascii
import copy
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from config import CONFIG_DEFAULTS, PROVIDER_DEFAULTS, logger

__all__ = [
    "BuildConfig",
    "BuildConfigError",
    "BuildMessage",
    "MessageDecodeError",
    "apply_config_defaults",
    "apply_provider_defaults",
    "decode_message",
]

_MISSING = object()


class BuildConfigError(ValueError):
    """A build config key is missing or has the wrong type."""


class MessageDecodeError(ValueError):
    """A record value is not a decodable build message."""


# ---------------------------------------------------------------------------
# BuildConfig
# ---------------------------------------------------------------------------


class BuildConfig:
    """Typed read access over the decoded ``buildConfig`` mapping."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, *, path: str = "buildConfig"):
        self._data: Dict[str, Any] = data if data is not None else {}
        self._path = path

    def __contains__(self, key: str) -> bool:
        return self._data.get(key) is not None

    def __eq__(self, other: object) -> bool:
        if isinstance(other, BuildConfig):
            return self._data == other._data
        return NotImplemented

    def __repr__(self) -> str:
        return f"BuildConfig({_redacted(self._data)!r})"

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def _lookup(self, key: str, required: bool, default: Any) -> Any:
        value = self._data.get(key)
        if value is not None:
            return value
        if default is not _MISSING:
            return default
        if required:
            raise BuildConfigError(f"{self._path}.{key} is required")
        return None

    def _type_error(self, key: str, expected: str, value: Any) -> BuildConfigError:
        return BuildConfigError(
            f"{self._path}.{key} must be {expected}, got {type(value).__name__}"
        )

    def get_str(self, key: str, *, required: bool = True, default: Any = _MISSING, allow_empty: bool = False) -> Optional[str]:
        value = self._lookup(key, required, default)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int, Decimal)):
            raise self._type_error(key, "a string", value)
        text = str(value)
        if not text and not allow_empty and required and default is _MISSING:
            raise BuildConfigError(f"{self._path}.{key} must not be empty")
        return text

    def get_int(self, key: str, *, required: bool = True, default: Any = _MISSING) -> Optional[int]:
        value = self._lookup(key, required, default)
        if value is None:
            return None
        if isinstance(value, bool):
            raise self._type_error(key, "an integer", value)
        if isinstance(value, int):
            return value
        if isinstance(value, Decimal) and value == value.to_integral_value():
            return int(value)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise self._type_error(key, "an integer", value)

    def get_bool(self, key: str, *, required: bool = True, default: Any = _MISSING) -> Optional[bool]:
        value = self._lookup(key, required, default)
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in {"true", "false"}:
            return value.lower() == "true"
        raise self._type_error(key, "a boolean", value)

    def get_list(self, key: str, *, required: bool = True, default: Any = _MISSING) -> Optional[List[Any]]:
        value = self._lookup(key, required, default)
        if value is None:
            return None
        if not isinstance(value, list):
            raise self._type_error(key, "a list", value)
        return list(value)

    def get_map(self, key: str, *, required: bool = True, default: Any = _MISSING) -> Optional["BuildConfig"]:
        value = self._lookup(key, required, default)
        if value is None:
            return None
        if not isinstance(value, dict):
            raise self._type_error(key, "an object", value)
        return BuildConfig(value, path=f"{self._path}.{key}")

    def setting(self, key: str) -> "BuildConfig":
        """Return the scope holding ``key``: top level first, then ``provider``."""
        if key in self:
            return self
        provider = self.provider
        if key in provider:
            return provider
        return self

    @property
    def provider(self) -> "BuildConfig":
        return self.get_map("provider", required=False) or BuildConfig({}, path=f"{self._path}.provider")

    @property
    def build_id(self) -> int:
        return self.get_int("buildId")

    @property
    def job_id(self) -> int:
        return self.get_int("jobId")

    def build_region(self, fallback: str = "") -> str:
        """buildRegion, then region, then the caller's fallback."""
        provider = self.provider
        region = provider.get_str("buildRegion", required=False, default="")
        if not region:
            region = provider.get_str("region", required=False, default="")
        return region or fallback


def _redacted(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: ("***" if k == "token" else v) for k, v in data.items()}


# ---------------------------------------------------------------------------
# BuildMessage
# ---------------------------------------------------------------------------


@dataclass
class BuildMessage:
    job: str
    executor_type: str
    build_config: BuildConfig

    def is_actionable(self) -> bool:
        return bool(self.job) and bool(self.executor_type)


def apply_config_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Seed top-level defaults underneath ``config``; present keys win."""
    merged = copy.deepcopy(CONFIG_DEFAULTS)
    merged.update(config)
    return merged


def apply_provider_defaults(provider: Dict[str, Any]) -> Dict[str, Any]:
    """Fill provider keys that are absent or null; never overwrite."""
    for key, value in PROVIDER_DEFAULTS.items():
        if provider.get(key) is None:
            provider[key] = copy.deepcopy(value)
    return provider


def _b64decode(value: str) -> str:
    try:
        raw = base64.b64decode(value or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.error("Base64 decode error: %s", exc)
        return ""
    return raw.decode("utf-8", errors="replace")


def decode_message(value: str) -> BuildMessage:
    """Decode one base64 record value into a defaulted BuildMessage."""
    message = _b64decode(value)
    try:
        payload = json.loads(message, parse_float=Decimal)
    except json.JSONDecodeError as exc:
        raise MessageDecodeError(f"invalid build message JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MessageDecodeError(f"build message must be a JSON object, got {type(payload).__name__}")

    raw_config = payload.get("buildConfig")
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise MessageDecodeError("buildConfig must be a JSON object")

    config = apply_config_defaults(raw_config)
    provider = config.get("provider")
    if provider is None:
        provider = {}
    if not isinstance(provider, dict):
        raise BuildConfigError("buildConfig.provider must be an object")
    config["provider"] = apply_provider_defaults(provider)

    job = payload.get("job") or ""
    executor_type = payload.get("executorType") or ""
    if not isinstance(job, str) or not isinstance(executor_type, str):
        raise MessageDecodeError("job and executorType must be strings")

    return BuildMessage(job=job, executor_type=executor_type, build_config=BuildConfig(config))
