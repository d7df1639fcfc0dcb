"""
Structural Field Extractor - Flattens nested JSON-ish text into path/value pairs.

This is a deliberately bounded heuristic, NOT a JSON parser. Intercepted
WebSocket traffic is often non-canonical, truncated, or malformed on purpose
during testing; a strict parser would reject it outright. The scanner instead
looks for ``"key": value`` pairs at each level and simply finds fewer pairs
when the input is broken.

Output example:
    '{"user":{"name":"a","tags":["x",{"id":1}]}}' ->
    {
        "user": '{"name":"a","tags":["x",{"id":1}]}',
        "user.name": "a",
        "user.tags": '["x",{"id":1}]',
        "user.tags[0]": '"x"',
        "user.tags[1]": '{"id":1}',
        "user.tags[1].id": "1",
    }

Bounds:
- Nesting deeper than ``max_depth`` levels (default 10) is not descended into.
- String literals and bracket pairs are located once per call in a single
  linear pass; every later lookup is by index, so the scan stays
  O(n * depth) even on adversarial input.
"""
import re
from bisect import bisect_left
from typing import Dict, List, Optional, Tuple

import structlog

from wsprobe.config import settings

logger = structlog.get_logger()

_NUMBER_PATTERN = re.compile(r'-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?')
_LITERAL_PATTERN = re.compile(r'true|false|null')

_OPENERS = {"{": "}", "[": "]"}


def unescape_string(value: str) -> str:
    """Reverse the two escapes the extractor cares about (\\" and \\\\)."""
    return value.replace('\\"', '"').replace("\\\\", "\\")


def scan_structure(text: str) -> Tuple[Dict[int, int], Dict[int, int]]:
    """
    Locate bracket pairs and string literals in one pass.

    Returns two maps: opening brace/bracket index -> closing index, and
    opening quote index -> closing quote index. Brackets inside strings are
    ignored; unclosed or mismatched openers and an unterminated trailing
    string are left out.
    """
    pairs: Dict[int, int] = {}
    strings: Dict[int, int] = {}
    stack: List[int] = []
    string_start = -1
    escaped = False

    for idx, char in enumerate(text):
        if string_start >= 0:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                strings[string_start] = idx
                string_start = -1
            continue

        if char == '"':
            string_start = idx
        elif char in _OPENERS:
            stack.append(idx)
        elif char == "}" or char == "]":
            if stack and _OPENERS[text[stack[-1]]] == char:
                pairs[stack.pop()] = idx

    return pairs, strings


def match_brackets(text: str) -> Dict[int, int]:
    """Map each opening brace/bracket index to its closing index."""
    return scan_structure(text)[0]


def _skip_whitespace(text: str, pos: int, end: int) -> int:
    while pos < end and text[pos].isspace():
        pos += 1
    return pos


def split_elements(text: str, start: int, end: int) -> List[tuple]:
    """
    Split ``text[start:end]`` on commas at nesting depth zero.

    Returns (element_start, element_end) spans with surrounding
    whitespace trimmed; empty elements are dropped.
    """
    spans = []
    depth = 0
    in_string = False
    escaped = False
    element_start = start

    def _push(lo: int, hi: int) -> None:
        while lo < hi and text[lo].isspace():
            lo += 1
        while hi > lo and text[hi - 1].isspace():
            hi -= 1
        if hi > lo:
            spans.append((lo, hi))

    for idx in range(start, end):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
        elif char == "," and depth == 0:
            _push(element_start, idx)
            element_start = idx + 1

    _push(element_start, end)
    return spans


class FieldExtractor:
    """
    Bounded recursive scanner producing a flat path -> value mapping.

    One instance per text; use ``extract_fields`` for the common case.
    """

    def __init__(self, text: str, max_depth: Optional[int] = None):
        self.text = text
        self.max_depth = settings.max_extract_depth if max_depth is None else max_depth
        self.fields: Dict[str, str] = {}
        self._pairs, self._strings = scan_structure(text)
        self._string_starts = list(self._strings)

    def extract(self) -> Dict[str, str]:
        self._walk_object(0, len(self.text), "", 1)
        return self.fields

    def _store(self, path: str, value: str) -> None:
        # first occurrence wins so insertion order follows the document
        if path not in self.fields:
            self.fields[path] = value

    def _walk_object(self, start: int, end: int, prefix: str, depth: int) -> None:
        if depth > self.max_depth:
            return

        text = self.text
        starts = self._string_starts
        idx = bisect_left(starts, start)
        while idx < len(starts):
            key_start = starts[idx]
            key_end = self._strings[key_start]
            if key_end >= end:
                break

            colon = _skip_whitespace(text, key_end + 1, end)
            if key_end > key_start + 1 and colon < end and text[colon] == ":":
                key = text[key_start + 1:key_end]
                path = f"{prefix}.{key}" if prefix else key
                value_start = _skip_whitespace(text, colon + 1, end)
                value_end = self._consume_value(value_start, end, path, depth)
                if value_end is not None:
                    idx = bisect_left(starts, value_end, idx + 1)
                    continue

            # Not a key, or no recognizable value: try the next string literal
            idx += 1

    def _consume_value(self, start: int, end: int, path: str, depth: int) -> Optional[int]:
        """Record the value at ``start``; return where scanning resumes."""
        text = self.text
        if start >= end:
            return None

        char = text[start]
        if char == '"':
            close = self._strings.get(start)
            if close is None or close >= end:
                return None
            self._store(path, unescape_string(text[start + 1:close]))
            return close + 1

        if char in _OPENERS:
            close = self._pairs.get(start)
            if close is None or close >= end:
                return None
            self._store(path, text[start:close + 1])
            if char == "{":
                self._walk_object(start + 1, close, path, depth + 1)
            else:
                self._walk_array(start + 1, close, path, depth)
            return close + 1

        for pattern in (_NUMBER_PATTERN, _LITERAL_PATTERN):
            match = pattern.match(text, start, end)
            if match:
                self._store(path, match.group(0))
                return match.end()

        return None

    def _walk_array(self, start: int, end: int, prefix: str, depth: int) -> None:
        if depth > self.max_depth:
            return

        for index, (lo, hi) in enumerate(split_elements(self.text, start, end)):
            path = f"{prefix}[{index}]"
            self._store(path, self.text[lo:hi])
            if self.text[lo] == "{" and self._pairs.get(lo) == hi - 1:
                self._walk_object(lo + 1, hi - 1, path, depth + 1)


def extract_fields(text: Optional[str], max_depth: Optional[int] = None) -> Dict[str, str]:
    """
    Extract a flat, ordered ``path -> value`` mapping from a text payload.

    Never raises; inputs above ``settings.max_input_length`` yield an empty
    mapping.
    """
    if not text:
        return {}
    if len(text) > settings.max_input_length:
        logger.debug("field_extraction_skipped", length=len(text))
        return {}
    return FieldExtractor(text.strip(), max_depth).extract()
