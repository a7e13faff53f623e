"""Locate and validate the tagged zone block inside free-form model output.

The model is asked to append a JSON object tagged with ``"schema":
"marketiq.zones/v1"``.  Only the last tagged object counts.  Three outcomes:

* ``valid``   - the last tagged object parsed and passed :class:`ZoneEnvelope`.
* ``invalid`` - a tag was found but its object is unterminated, is not JSON, or
  fails the schema (this is what triggers a repair pass).
* ``absent``  - no tag anywhere (heuristic extraction takes over).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import ValidationError

from ..errors import SchemaValidationFailed
from ..schemas import ZoneEnvelope

Status = Literal["valid", "invalid", "absent"]

_TAG_RE = re.compile(r"marketiq\.zones\\?/v1")
_MAX_BRACE_SCANS = 64
_DECODER = json.JSONDecoder()


@dataclass(slots=True)
class ValidationOutcome:
    status: Status
    envelope: ZoneEnvelope | None = None
    error: str | None = None
    block: str | None = None

    @property
    def valid(self) -> bool:
        return self.status == "valid"


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(item) for item in err.get("loc", ()))
        parts.append(f"{loc or 'envelope'}: {err.get('msg')}")
    return "; ".join(parts)


def parse_envelope(payload: Any) -> ZoneEnvelope:
    """Validate a decoded object; raises :class:`SchemaValidationFailed` with a compact reason."""

    if not isinstance(payload, dict):
        raise SchemaValidationFailed("block is not a JSON object")
    try:
        return ZoneEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationFailed(_describe(exc)) from exc


def _object_around(text: str, tag_pos: int) -> tuple[dict[str, Any], str] | None:
    """Decode the innermost JSON object that starts before ``tag_pos`` and ends after it."""

    scans = 0
    start = text.rfind("{", 0, tag_pos)
    while start != -1 and scans < _MAX_BRACE_SCANS:
        scans += 1
        try:
            obj, end = _DECODER.raw_decode(text, start)
        except ValueError:
            obj, end = None, -1
        if isinstance(obj, dict) and end > tag_pos and "schema" in obj:
            return obj, text[start:end]
        start = text.rfind("{", 0, start)
    return None


def find_zone_block(text: str) -> tuple[Literal["found", "unparseable", "absent"], dict[str, Any] | None, str | None]:
    """Return ``(state, decoded_object, raw_block)`` for the last tagged block in ``text``."""

    matches = list(_TAG_RE.finditer(text or ""))
    if not matches:
        return "absent", None, None
    tag_pos = matches[-1].start()
    found = _object_around(text, tag_pos)
    if found is None:
        return "unparseable", None, text[max(0, text.rfind("{", 0, tag_pos)):][:2000]
    obj, block = found
    return "found", obj, block


def validate_zone_block(text: str) -> ValidationOutcome:
    status, obj, block = find_zone_block(text)
    if status == "absent":
        return ValidationOutcome("absent")
    if obj is None:
        return ValidationOutcome("invalid", error="tagged block is not parseable JSON", block=block)
    try:
        envelope = parse_envelope(obj)
    except SchemaValidationFailed as exc:
        return ValidationOutcome("invalid", error=exc.reason, block=block)
    return ValidationOutcome("valid", envelope=envelope, block=block)


def strip_zone_block(text: str) -> str:
    """Remove the trailing machine block (and its fence) so the prose can be shown to users."""

    status, _, block = find_zone_block(text)
    if status == "absent" or not block:
        return (text or "").strip()
    idx = text.rfind(block)
    if idx == -1:
        return text.strip()
    head, tail = text[:idx], text[idx + len(block):]
    head = re.sub(r"```(?:json)?\s*$", "", head.rstrip())
    tail = re.sub(r"^\s*```", "", tail)
    return (head.rstrip() + ("\n" + tail.strip() if tail.strip() else "")).strip()


__all__ = [
    "ValidationOutcome",
    "find_zone_block",
    "parse_envelope",
    "strip_zone_block",
    "validate_zone_block",
]
