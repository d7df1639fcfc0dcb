"""
Tests for the structural field extractor.

Tests cover:
- Flat objects and insertion order
- Nested objects and arrays
- Depth bound
- Malformed and oversized input
"""
import time

import pytest

from wsprobe.config import settings
from wsprobe.engine.field_extractor import (
    extract_fields,
    match_brackets,
    scan_structure,
    split_elements,
    unescape_string,
)


def _nested(levels: int) -> str:
    text = '"leaf"'
    for level in range(levels, 0, -1):
        text = '{"l%d":%s}' % (level, text)
    return text


class TestHelpers:
    """Tests for bracket matching and element splitting."""

    def test_match_brackets_ignores_strings(self):
        """Brackets inside string literals are not paired."""
        text = '{"a":"}{","b":[1,2]}'
        pairs = match_brackets(text)

        assert pairs[0] == len(text) - 1
        assert pairs[text.index("[")] == text.index("]")
        assert len(pairs) == 2

    def test_unclosed_opener_is_not_paired(self):
        """An opener without a closer is left out of the map."""
        assert 0 not in match_brackets('{"a":[1,2')

    def test_split_elements_respects_nesting(self):
        """Commas inside nested brackets and strings do not split."""
        text = '1, "a,b", [2,3], {"k":"v,w"}'
        spans = split_elements(text, 0, len(text))

        assert [text[lo:hi] for lo, hi in spans] == ['1', '"a,b"', '[2,3]', '{"k":"v,w"}']

    def test_unescape_string(self):
        assert unescape_string(r'{\"x\":\"a\\\\b\"}') == r'{"x":"a\\b"}'

    def test_scan_structure_locates_strings(self):
        """Escaped quotes stay inside the literal; an unterminated one is omitted."""
        text = r'{"a":"x\"y","b'
        pairs, strings = scan_structure(text)

        assert pairs == {}
        assert strings == {1: 3, 5: 10}


class TestExtractFields:
    """Tests for extract_fields()."""

    def test_flat_object_is_idempotent(self):
        """A flat object yields exactly its pairs, in document order."""
        fields = extract_fields('{"a":"1","b":"2"}')

        assert fields == {"a": "1", "b": "2"}
        assert list(fields) == ["a", "b"]

    def test_scalar_shapes(self):
        """Strings are unescaped; numbers and literals are kept verbatim."""
        fields = extract_fields('{"s":"he said \\"hi\\"","n":-1.5e3,"t":true,"z":null}')

        assert fields == {"s": 'he said "hi"', "n": "-1.5e3", "t": "true", "z": "null"}

    def test_nested_objects_and_arrays(self):
        """Containers are stored raw and expanded under dotted/indexed paths."""
        text = '{"user":{"name":"a","tags":["x",{"id":1}]}}'
        fields = extract_fields(text)

        assert fields == {
            "user": '{"name":"a","tags":["x",{"id":1}]}',
            "user.name": "a",
            "user.tags": '["x",{"id":1}]',
            "user.tags[0]": '"x"',
            "user.tags[1]": '{"id":1}',
            "user.tags[1].id": "1",
        }

    def test_first_occurrence_wins(self):
        """Duplicate keys keep the first value."""
        assert extract_fields('{"a":1,"a":2}') == {"a": "1"}

    def test_depth_bound(self):
        """Twelve levels of nesting extract only the first ten."""
        fields = extract_fields(_nested(12))
        deepest = ".".join("l%d" % level for level in range(1, 11))

        assert deepest in fields
        assert not any("l11" in path.split(".")[-1] for path in fields)
        assert max(path.count(".") + 1 for path in fields) == 10

    def test_custom_depth(self):
        fields = extract_fields(_nested(3), max_depth=1)

        assert list(fields) == ["l1"]

    @pytest.mark.parametrize("text", ["", None, "   ", "not json at all", '{"a":', '{"a":[1,2'])
    def test_malformed_input_never_raises(self, text):
        """Broken input just yields fewer fields."""
        assert isinstance(extract_fields(text), dict)

    def test_unknown_value_shape_is_skipped(self):
        """A key with an unrecognized value does not stop the scan."""
        assert extract_fields('{"a":undefined,"b":2}') == {"b": "2"}

    def test_oversized_input_is_skipped(self):
        """Input above the configured limit yields nothing."""
        text = '{"a":"' + "x" * settings.max_input_length + '"}'

        assert extract_fields(text) == {}

    def test_string_value_that_looks_like_a_pair_is_not_a_key(self):
        assert extract_fields(r'{"a":"\"b\":1","c":2}') == {"a": '"b":1', "c": "2"}

    def test_unterminated_escaped_key_is_linear(self):
        """A million-character key of escaped quotes never closes and yields nothing."""
        text = '{"' + '\\"' * 499_999

        started = time.perf_counter()
        fields = extract_fields(text)
        elapsed = time.perf_counter() - started

        assert fields == {}
        assert elapsed < 5.0

    def test_many_unpaired_keys_are_linear(self):
        """Keys without values are stepped over one literal at a time."""
        text = "{" + '"k" ' * 200_000 + "}"

        started = time.perf_counter()
        assert extract_fields(text) == {}
        assert time.perf_counter() - started < 5.0
