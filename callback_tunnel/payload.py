"""Callback body normalization, dispatched on the request's content type."""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from aiohttp import web

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


class PayloadKind(enum.Enum):
    """Closed set of body shapes the callback endpoint understands."""

    JSON = "json"
    FORM = "form"
    OTHER = "other"


@dataclass(frozen=True)
class NormalizedBody:
    """Result of normalizing one request body."""

    kind: PayloadKind
    body: Any
    converted: bool = False  # form data was reduced to a plain dict
    malformed: bool = False  # declared JSON failed to parse


def classify(content_type: str) -> PayloadKind:
    """Map a MIME type (parameters already stripped or not) to a `PayloadKind`."""
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime == FORM_CONTENT_TYPE:
        return PayloadKind.FORM
    if mime == JSON_CONTENT_TYPE or (mime.startswith("application/") and mime.endswith("+json")):
        return PayloadKind.JSON
    return PayloadKind.OTHER


def flatten_pairs(pairs: Iterable[tuple[str, Any]]) -> dict[str, Any]:
    """Reduce decoded form pairs to a JSON-compatible dict.

    A key seen once maps to its string value; a repeated key maps to a list
    of its values in arrival order.
    """
    result: dict[str, Any] = {}
    for key, value in pairs:
        text = value if isinstance(value, str) else str(value)
        if key not in result:
            result[key] = text
        elif isinstance(result[key], list):
            result[key].append(text)
        else:
            result[key] = [result[key], text]
    return result


async def _normalize_form(request: web.Request) -> NormalizedBody:
    form = await request.post()
    return NormalizedBody(PayloadKind.FORM, flatten_pairs(form.items()), converted=True)


async def _normalize_json(request: web.Request) -> NormalizedBody:
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Malformed JSON callback body (%d bytes)", request.content_length or 0)
        return NormalizedBody(PayloadKind.JSON, None, malformed=True)
    return NormalizedBody(PayloadKind.JSON, body)


async def _normalize_other(request: web.Request) -> NormalizedBody:
    raw = await request.read()
    if not raw:
        return NormalizedBody(PayloadKind.OTHER, None)
    charset = request.charset or "utf-8"
    try:
        text = raw.decode(charset, errors="replace")
    except LookupError:
        text = raw.decode("utf-8", errors="replace")
    return NormalizedBody(PayloadKind.OTHER, text)


_NORMALIZERS = {
    PayloadKind.FORM: _normalize_form,
    PayloadKind.JSON: _normalize_json,
    PayloadKind.OTHER: _normalize_other,
}


async def normalize_body(request: web.Request) -> NormalizedBody:
    """Read and normalize the body of *request* according to its content type."""
    kind = classify(request.content_type)
    return await _NORMALIZERS[kind](request)
