"""
Template mutation strategies

Two independent ways of turning a frame template plus one payload into a
concrete frame:
- Named-field replacement: locate ``"name": value`` in the template and
  rewrite the value in place (string, number, boolean/null values).
- Position markers: literal substitution of every ``§name§`` token, with no
  regard for surrounding quoting or escaping.

Payloads may be encoded (URL, base64, ...) before substitution.
"""
import base64
import re
from enum import Enum
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote_plus

import structlog

from wsprobe.models import DecodedFrame

logger = structlog.get_logger()

MARKER = "§"
DEFAULT_MARKER_NAME = "payload"

_MARKER_PATTERN = re.compile(MARKER + "([^" + MARKER + "]+)" + MARKER)
_ARRAY_PATH_PATTERN = re.compile(r"(\w+)\[(\d+)\]")
_VALUE_TAIL = {
    "string": r'"(?:[^"\\]|\\.)*"',
    "number": r"-?[\d.]+",
    "literal": r"(?:true|false|null)",
}


class PayloadEncoding(str, Enum):
    """Encoding applied to a payload before it is substituted"""

    NONE = "none"
    URL = "url"
    BASE64 = "base64"
    DOUBLE_URL = "double_url"
    UNICODE = "unicode"


def encode_payload(payload: str, encoding: PayloadEncoding = PayloadEncoding.NONE) -> str:
    if encoding == PayloadEncoding.URL:
        return quote_plus(payload)
    if encoding == PayloadEncoding.BASE64:
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")
    if encoding == PayloadEncoding.DOUBLE_URL:
        return quote_plus(quote_plus(payload))
    if encoding == PayloadEncoding.UNICODE:
        # UTF-16 code units so astral characters become surrogate pairs
        units = payload.encode("utf-16-be")
        return "".join(
            "\\u%02x%02x" % (units[i], units[i + 1]) for i in range(0, len(units), 2)
        )
    return payload


def escape_json(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


# ==================== NAMED FIELD REPLACEMENT ====================

def replace_field_value(text: str, field_name: str, new_value: str) -> str:
    """
    Replace the value of ``field_name`` inside ``text``.

    Only the first occurrence is rewritten. String values get the new value
    JSON-escaped inside quotes; number and boolean/null values are replaced
    verbatim. Returns ``text`` unchanged when the field is not found.

    Known limitation: dotted (``a.b.c``) and indexed (``items[0]``) paths are
    resolved to their last field name and matched anywhere in the text, so a
    name that also occurs elsewhere may hit the wrong occurrence.
    """
    if "." in field_name:
        field_name = field_name.rsplit(".", 1)[1]

    array_match = _ARRAY_PATH_PATTERN.search(field_name)
    if array_match:
        field_name = array_match.group(1)
    elif re.search(r"\[\d+\]", field_name):
        return text

    key_pattern = r'("' + re.escape(field_name) + r'")\s*:\s*'

    for shape, tail in _VALUE_TAIL.items():
        if shape == "string":
            replacement = '"' + escape_json(new_value) + '"'
        else:
            replacement = new_value

        result, count = re.subn(
            key_pattern + tail,
            lambda m, r=replacement: m.group(1) + ":" + r,
            text,
            count=1,
        )
        if count:
            return result

    logger.debug("field_not_found", field=field_name)
    return text


# ==================== POSITION MARKERS ====================

def find_markers(template: str) -> List[str]:
    """Distinct marker names, in order of first appearance."""
    seen: Dict[str, None] = {}
    for match in _MARKER_PATTERN.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def replace_marker(template: str, marker: str, value: str) -> str:
    return template.replace(MARKER + marker + MARKER, value)


def replace_markers(template: str, values: Dict[str, str]) -> str:
    result = template
    for marker, value in values.items():
        result = replace_marker(result, marker, value)
    return result


def auto_mark_template(frame: DecodedFrame, marker: str = DEFAULT_MARKER_NAME) -> str:
    """
    Build a template from a captured frame by wrapping its first scalar
    string value in a position marker.

    Falls back to the raw frame when no quoted scalar value is found.
    """
    for value in frame.fields.values():
        if value.startswith("{") or value.startswith("["):
            continue
        quoted = '"' + value + '"'
        if quoted in frame.raw:
            return frame.raw.replace(quoted, '"' + MARKER + marker + MARKER + '"')
    return frame.raw


class TemplateMutator:
    """
    Produces one concrete frame per payload from a template.

    Exactly one of ``field`` (named-field mode) or ``markers``
    (position-marker mode) is used; with neither, every marker found in the
    template is substituted.
    """

    def __init__(
        self,
        template: str,
        field: Optional[str] = None,
        markers: Optional[Iterable[str]] = None,
        encoding: PayloadEncoding = PayloadEncoding.NONE,
    ):
        if field is not None and markers is not None:
            raise ValueError("Use either a target field or position markers, not both")

        self.template = template
        self.field = field
        self.markers = list(markers) if markers is not None else None
        if self.field is None and self.markers is None:
            self.markers = find_markers(template)
        self.encoding = encoding

    @property
    def mode(self) -> str:
        return "field" if self.field is not None else "markers"

    def apply(self, payload: str) -> str:
        value = encode_payload(payload, self.encoding)
        if self.field is not None:
            return replace_field_value(self.template, self.field, value)
        return replace_markers(self.template, {marker: value for marker in self.markers})
