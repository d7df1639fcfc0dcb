"""
Tests for named payload sets and custom payload lists.
"""
import pytest

from wsprobe.exceptions import PayloadError, PayloadSetNotFoundError
from wsprobe.payloads import PAYLOAD_SETS, get_payload_set, load_payload_file, parse_payloads


class TestPayloadSets:
    """Tests for built-in payload sets."""

    def test_idor_sequences(self):
        assert get_payload_set("IDOR (1-50)") == [str(i) for i in range(1, 51)]
        assert len(get_payload_set("IDOR (1-500)")) == 500

    def test_every_set_is_non_empty(self):
        for label, payloads in PAYLOAD_SETS.items():
            assert payloads, label

    def test_returns_a_copy(self):
        payloads = get_payload_set("XSS")
        payloads.clear()

        assert PAYLOAD_SETS["XSS"]

    def test_unknown_label(self):
        with pytest.raises(PayloadSetNotFoundError) as exc_info:
            get_payload_set("Nope")

        assert "XSS" in exc_info.value.details["available"]


class TestCustomPayloads:
    """Tests for parse_payloads() and load_payload_file()."""

    def test_blank_and_comment_lines_ignored(self):
        text = "# header\n\nalpha\n   \n  beta  \n#gamma\n"

        assert parse_payloads(text) == ["alpha", "beta"]

    def test_load_file(self, tmp_path):
        path = tmp_path / "payloads.txt"
        path.write_text("one\n# skip\ntwo\n", encoding="utf-8")

        assert load_payload_file(path) == ["one", "two"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(PayloadError):
            load_payload_file(tmp_path / "missing.txt")
