"""Configuration management for whip-output."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

from .sdp import AUDIO_PAYLOAD_TYPE, MAX_FRAGMENT_SIZE, NACK_BUFFER_PACKETS, VIDEO_PAYLOAD_TYPE
from .signaling import DEFAULT_TIMEOUT

ENDPOINT_ENV = "WHIP_OUTPUT_ENDPOINT"
BEARER_TOKEN_ENV = "WHIP_OUTPUT_BEARER_TOKEN"


@dataclass(frozen=True, slots=True)
class ServiceSettings:
    """Where to publish and how to authenticate."""

    endpoint_url: str = ""
    bearer_token: str | None = None

    def __post_init__(self) -> None:
        endpoint = self.endpoint_url.strip() if isinstance(self.endpoint_url, str) else ""
        if endpoint and not endpoint.lower().startswith(("http://", "https://")):
            raise ValueError("Endpoint URL must use http or https")
        token = self.bearer_token.strip() if isinstance(self.bearer_token, str) else None
        object.__setattr__(self, "endpoint_url", endpoint)
        object.__setattr__(self, "bearer_token", token or None)

    def to_dict(self) -> dict[str, str | None]:
        return {"endpoint_url": self.endpoint_url, "bearer_token": self.bearer_token}


def _validate_payload_type(value: int, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if not 96 <= number <= 127:
        raise ValueError(f"{name} must be a dynamic payload type between 96 and 127")
    return number


@dataclass(frozen=True, slots=True)
class OutputSettings:
    """Tuning values for signalling and RTP packetization."""

    timeout: float = DEFAULT_TIMEOUT
    max_fragment_size: int = MAX_FRAGMENT_SIZE
    audio_payload_type: int = AUDIO_PAYLOAD_TYPE
    video_payload_type: int = VIDEO_PAYLOAD_TYPE
    nack_buffer: int = NACK_BUFFER_PACKETS

    def __post_init__(self) -> None:
        try:
            timeout = float(self.timeout)
        except (TypeError, ValueError) as exc:
            raise ValueError("Timeout must be numeric") from exc
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError("Timeout must be a positive number of seconds")
        try:
            fragment = int(self.max_fragment_size)
            nack_buffer = int(self.nack_buffer)
        except (TypeError, ValueError) as exc:
            raise ValueError("Fragment size and NACK buffer must be integers") from exc
        if fragment < 576 or fragment > 1470:
            raise ValueError("Max fragment size must be between 576 and 1470 bytes")
        if nack_buffer < 0:
            raise ValueError("NACK buffer must not be negative")
        audio_pt = _validate_payload_type(self.audio_payload_type, "Audio payload type")
        video_pt = _validate_payload_type(self.video_payload_type, "Video payload type")
        if audio_pt == video_pt:
            raise ValueError("Audio and video payload types must differ")
        object.__setattr__(self, "timeout", timeout)
        object.__setattr__(self, "max_fragment_size", fragment)
        object.__setattr__(self, "nack_buffer", nack_buffer)
        object.__setattr__(self, "audio_payload_type", audio_pt)
        object.__setattr__(self, "video_payload_type", video_pt)

    def to_dict(self) -> dict[str, float | int]:
        return {
            "timeout": float(self.timeout),
            "max_fragment_size": int(self.max_fragment_size),
            "audio_payload_type": int(self.audio_payload_type),
            "video_payload_type": int(self.video_payload_type),
            "nack_buffer": int(self.nack_buffer),
        }


DEFAULT_SERVICE_SETTINGS = ServiceSettings()
DEFAULT_OUTPUT_SETTINGS = OutputSettings()


def _parse_service(payload: object, *, default: ServiceSettings) -> ServiceSettings:
    if not isinstance(payload, Mapping):
        return default
    endpoint = payload.get("endpoint_url", default.endpoint_url)
    token = payload.get("bearer_token", default.bearer_token)
    if not isinstance(endpoint, str):
        endpoint = default.endpoint_url
    if token is not None and not isinstance(token, str):
        token = default.bearer_token
    try:
        return ServiceSettings(endpoint, token)
    except ValueError:
        return default


def _parse_output(payload: object, *, default: OutputSettings) -> OutputSettings:
    if not isinstance(payload, Mapping):
        return default
    values: dict[str, Any] = default.to_dict()
    for key in values:
        if key in payload:
            values[key] = payload[key]
    try:
        return OutputSettings(**values)
    except ValueError:
        return default


def apply_environment(
    service: ServiceSettings, environ: Mapping[str, str] | None = None
) -> ServiceSettings:
    env = os.environ if environ is None else environ
    endpoint = env.get(ENDPOINT_ENV)
    token = env.get(BEARER_TOKEN_ENV)
    if endpoint:
        service = replace(service, endpoint_url=endpoint)
    if token:
        service = replace(service, bearer_token=token)
    return service


class SettingsManager:
    """Stores publishing settings on disk with thread-safety."""

    def __init__(
        self,
        config_path: Path | str,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._environ = environ
        self._ensure_parent()
        self._service, self._output = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[ServiceSettings, OutputSettings]:
        if not self._path.exists():
            return (
                apply_environment(DEFAULT_SERVICE_SETTINGS, self._environ),
                DEFAULT_OUTPUT_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        service = _parse_service(payload.get("service"), default=DEFAULT_SERVICE_SETTINGS)
        output = _parse_output(payload.get("output"), default=DEFAULT_OUTPUT_SETTINGS)
        return apply_environment(service, self._environ), output

    def _save(self) -> None:
        payload = {
            "service": self._service.to_dict(),
            "output": self._output.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_service(self) -> ServiceSettings:
        with self._lock:
            return self._service

    def set_service(self, data: Mapping[str, Any]) -> ServiceSettings:
        endpoint = data.get("endpoint_url", "")
        token = data.get("bearer_token")
        if not isinstance(endpoint, str):
            raise ValueError("Endpoint URL must be a string")
        if token is not None and not isinstance(token, str):
            raise ValueError("Bearer token must be a string")
        service = ServiceSettings(endpoint, token)
        with self._lock:
            self._service = service
            self._save()
        return service

    def get_output(self) -> OutputSettings:
        with self._lock:
            return self._output

    def set_output(self, data: Mapping[str, Any]) -> OutputSettings:
        with self._lock:
            values: dict[str, Any] = self._output.to_dict()
            unknown = set(data) - set(values)
            if unknown:
                raise ValueError(f"Unknown output settings: {', '.join(sorted(unknown))}")
            values.update(data)
            output = OutputSettings(**values)
            self._output = output
            self._save()
        return output


__all__ = [
    "BEARER_TOKEN_ENV",
    "apply_environment",
    "DEFAULT_OUTPUT_SETTINGS",
    "DEFAULT_SERVICE_SETTINGS",
    "ENDPOINT_ENV",
    "OutputSettings",
    "ServiceSettings",
    "SettingsManager",
]
