from __future__ import annotations

import json
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib import error, request

from discovery_worker.errors import (
    CorruptInput,
    DetectionFailure,
    ExternalServiceError,
    ExternalServiceUnavailable,
    ProcessingError,
    UnsupportedFormat,
)

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUSES = {408, 429}


@dataclass(frozen=True)
class ExternalResult:
    detected_type: str | None = None
    extracted_text: str | None = None
    raw_properties: dict[str, Any] = field(default_factory=dict)


def _strip_parameters(mimetype: str) -> str:
    return mimetype.split(";", 1)[0].strip().lower()


def _flatten_metadata(payload: dict[str, Any]) -> dict[str, Any]:
    flattened: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, list) and len(value) == 1:
            value = value[0]
        if value in (None, "", []):
            continue
        flattened[key] = value
    return flattened


def _http_error_message(exc: error.HTTPError) -> str:
    try:
        body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:
        body = ""
    if body:
        return f"Tika request failed with HTTP {exc.code}: {body[:200]}"
    return f"Tika request failed with HTTP {exc.code}."


def _classify_http_error(exc: error.HTTPError, *, type_hint: str | None, path: str) -> ProcessingError:
    message = _http_error_message(exc)
    details = {"status": exc.code, "path": path}
    if exc.code in TRANSIENT_HTTP_STATUSES or exc.code >= 500:
        return ExternalServiceError(message, details)
    if exc.code == 415:
        return UnsupportedFormat(type_hint or "unknown", "extract_text", message)
    if exc.code == 422:
        return CorruptInput(message, details)
    return ExternalServiceUnavailable(message, details)


class TikaClient:
    """Client for an Apache Tika server used for detection and fallback extraction.

    Each call makes exactly one HTTP attempt; retrying is left to the caller's retry policy.
    Concurrent calls are bounded by ``max_concurrency``.
    """

    def __init__(
        self,
        endpoint: str = "http://localhost:9998",
        *,
        timeout: float = 30.0,
        max_concurrency: int = 4,
        urlopen: Callable[..., Any] | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._urlopen = urlopen or request.urlopen

    @classmethod
    def from_config(cls, config) -> "TikaClient":
        return cls(
            config.tika_endpoint,
            timeout=config.tika_timeout_seconds,
            max_concurrency=config.tika_max_concurrency,
        )

    def _put(self, path: str, content: bytes, headers: dict[str, str], type_hint: str | None = None) -> bytes:
        req = request.Request(f"{self.endpoint}{path}", data=content, headers=headers, method="PUT")
        with self._slots:
            try:
                with self._urlopen(req, timeout=self.timeout) as response:
                    return response.read()
            except error.HTTPError as exc:
                raise _classify_http_error(exc, type_hint=type_hint, path=path) from exc
            except (error.URLError, TimeoutError, socket.timeout, ConnectionError) as exc:
                raise ExternalServiceError(
                    f"Tika request to {path} failed before receiving a response: {exc}",
                    {"path": path},
                ) from exc

    @staticmethod
    def _headers(accept: str, type_hint: str | None = None, filename: str | None = None) -> dict[str, str]:
        headers = {"Accept": accept, "X-Tika-Skip-Embedded": "true"}
        if type_hint:
            headers["Content-Type"] = type_hint
        if filename:
            headers["Content-Disposition"] = f'attachment; filename="{filename}"'
        return headers

    def detect(self, content: bytes, filename: str | None = None) -> str:
        body = self._put("/meta/Content-Type", content, self._headers("application/json", filename=filename))
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DetectionFailure("Tika detection response was not valid JSON.") from exc

        mimetype = payload.get("Content-Type") if isinstance(payload, dict) else None
        if isinstance(mimetype, list):
            mimetype = mimetype[0] if mimetype else None
        if not isinstance(mimetype, str) or not mimetype.strip():
            raise DetectionFailure("No Content-Type found in Tika detection response.")
        return _strip_parameters(mimetype)

    def text(self, content: bytes, type_hint: str | None = None) -> str:
        body = self._put("/tika", content, self._headers("text/plain", type_hint), type_hint)
        return body.decode("utf-8", errors="replace")

    def metadata(self, content: bytes, type_hint: str | None = None) -> dict[str, Any]:
        body = self._put("/meta", content, self._headers("application/json", type_hint), type_hint)
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ExternalServiceError("Tika metadata response was not valid JSON.") from exc
        if not isinstance(payload, dict):
            return {}
        return _flatten_metadata(payload)

    def request(
        self,
        content: bytes,
        type_hint: str | None = None,
        *,
        want_text: bool = True,
        want_metadata: bool = True,
        retry_policy=None,
    ) -> ExternalResult:
        """Fetch metadata and text; with a ``retry_policy`` each call is retried on its own."""

        def _call(fn: Callable[..., Any]) -> Any:
            if retry_policy is None:
                return fn(content, type_hint)
            return retry_policy.call(fn, content, type_hint)

        raw_properties = _call(self.metadata) if want_metadata else {}
        extracted_text = _call(self.text) if want_text else None
        detected = raw_properties.get("Content-Type")
        logger.debug("Tika request finished for %s (detected=%s)", type_hint, detected)
        return ExternalResult(
            detected_type=_strip_parameters(detected) if isinstance(detected, str) else None,
            extracted_text=extracted_text,
            raw_properties=raw_properties,
        )
