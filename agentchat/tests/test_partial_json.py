"""Tests for best-effort JSON reconstruction."""

import pytest

from agentchat.partial_json import parse_final_json, parse_partial_json


class TestParsePartialJson:
    """Tests for parse_partial_json."""

    def test_complete_document_parses_strictly(self):
        assert parse_partial_json('{"path": "/a.txt"}') == {"path": "/a.txt"}

    @pytest.mark.parametrize("text", [None, "", "   "])
    def test_empty_input_returns_none(self, text):
        assert parse_partial_json(text) is None

    def test_key_without_value_yields_empty_object(self):
        assert parse_partial_json('{"path":') == {}

    def test_truncated_string_is_closed(self):
        assert parse_partial_json('{"path":"/a.') == {"path": "/a."}

    def test_incremental_argument_stream(self):
        """Fragments accumulate into progressively better values."""
        buffer = ""
        seen = []
        for fragment in ['{"path":', '"/a.', 'txt"}']:
            buffer += fragment
            seen.append(parse_partial_json(buffer))
        assert seen == [{}, {"path": "/a."}, {"path": "/a.txt"}]

    def test_nested_containers_closed_innermost_first(self):
        assert parse_partial_json('{"a": [1, 2, {"b": "c') == {"a": [1, 2, {"b": "c"}]}

    def test_trailing_comma_is_dropped(self):
        assert parse_partial_json('{"a": 1,') == {"a": 1}
        assert parse_partial_json("[1, 2, ") == [1, 2]

    def test_partial_literal_cuts_back_to_last_element(self):
        assert parse_partial_json('{"a": 1, "b": tru') == {"a": 1}

    def test_partial_number_cuts_back(self):
        assert parse_partial_json('{"a": "x", "b": -') == {"a": "x"}

    def test_dangling_escape_inside_string(self):
        assert parse_partial_json('{"a": "line\\') == {"a": "line"}

    def test_partial_unicode_escape_is_stripped(self):
        assert parse_partial_json('{"a": "caf\\u00') == {"a": "caf"}

    def test_escaped_backslash_before_u_is_kept(self):
        assert parse_partial_json('{"p": "C:\\\\u') == {"p": "C:\\u"}

    def test_partial_unicode_escape_after_escaped_backslash(self):
        assert parse_partial_json('{"p": "x\\\\\\u00') == {"p": "x\\"}

    def test_braces_inside_strings_are_not_containers(self):
        assert parse_partial_json('{"code": "if (x) {') == {"code": "if (x) {"}

    def test_garbage_returns_none(self):
        assert parse_partial_json("not json") is None

    def test_scalar_prefix(self):
        assert parse_partial_json('"hel') == "hel"


class TestParseFinalJson:
    """Tests for parse_final_json."""

    def test_strict_parse(self):
        assert parse_final_json('{"command": "ls"}') == {"command": "ls"}

    def test_falls_back_to_partial(self):
        assert parse_final_json('{"command": "ls"') == {"command": "ls"}

    def test_empty_returns_none(self):
        assert parse_final_json("") is None
        assert parse_final_json(None) is None
