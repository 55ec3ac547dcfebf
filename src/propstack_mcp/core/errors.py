"""HTTP response classification for the Propstack API.

Maps status codes and bodies onto the ``ErrorKind`` taxonomy and normalizes
the upstream's inconsistent success shapes (bare array, single object,
``{"data": [...], "meta": {...}}``) into one ``Success`` model.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from .models import ErrorKind, Failure, Outcome, Success

_TRAILING_ID = re.compile(r"/(\d+)/?$")

_STATUS_KINDS = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


class PropstackError(Exception):
    """Raised when a composite operation cannot proceed past a failed call."""

    def __init__(self, failure: Failure):
        super().__init__(failure.message)
        self.failure = failure


def extract_resource_id(path: str) -> Optional[str]:
    """Return the id from a path ending in a numeric segment, e.g. '/units/456' → '456'."""
    path = path.split("?", 1)[0]
    match = _TRAILING_ID.search(path)
    return match.group(1) if match else None


def parse_validation_errors(body: str) -> dict[str, list[str]]:
    """Parse a 422 body into field → messages.

    Propstack returns ``{"errors": {field: [msg, ...]}}`` or ``{"error": "msg"}``.
    Anything else ends up as a single ``base`` message.
    """
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        errors = parsed.get("errors")
        if isinstance(errors, dict) and errors:
            return {
                str(field): [str(m) for m in msgs] if isinstance(msgs, list) else [str(msgs)]
                for field, msgs in errors.items()
            }
        if parsed.get("error"):
            return {"base": [str(parsed["error"])]}

    return {"base": [body]} if body else {}


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _normalize(data: Any) -> Success:
    if isinstance(data, list):
        return Success(payload=data)
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        meta = data.get("meta") or {}
        total = meta.get("total_count", meta.get("total")) if isinstance(meta, dict) else None
        try:
            total = int(total) if total is not None else None
        except (TypeError, ValueError):
            total = None
        return Success(payload=data["data"], total_count=total)
    return Success(payload=data)


def classify_response(response: httpx.Response, path: str) -> Outcome:
    """Turn one HTTP response into a Success or a classified Failure."""
    status = response.status_code

    if 200 <= status < 300:
        if status == 204 or not response.content.strip():
            return Success(no_content=True)
        try:
            data = response.json()
        except ValueError:
            return Failure(kind=ErrorKind.UNKNOWN, status=status, detail=f"Invalid JSON body: {response.text[:200]}", path=path)
        return _normalize(data)

    body = response.text
    kind = _STATUS_KINDS.get(status, ErrorKind.UNKNOWN)

    if kind is ErrorKind.NOT_FOUND:
        return Failure(kind=kind, status=status, detail=body, path=path, resource_id=extract_resource_id(path))
    if kind is ErrorKind.VALIDATION:
        return Failure(kind=kind, status=status, detail=body, path=path, field_errors=parse_validation_errors(body))
    if kind is ErrorKind.RATE_LIMITED:
        return Failure(kind=kind, status=status, detail=body, path=path, retry_after=parse_retry_after(response.headers.get("Retry-After")))
    return Failure(kind=kind, status=status, detail=body, path=path)


def network_failure(exc: httpx.TransportError, path: str) -> Failure:
    """Classify a transport-level error (refused, DNS, timeout)."""
    return Failure(
        kind=ErrorKind.NETWORK_UNREACHABLE,
        detail=str(exc) or exc.__class__.__name__,
        path=path,
    )
