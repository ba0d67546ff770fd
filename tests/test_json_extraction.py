"""Tests for the JSON extraction utility."""

from utils.json_extraction import (
    extract_json_object,
    extract_json_or_default,
    strip_code_fences,
)


class TestStripCodeFences:
    """Test the strip_code_fences function."""

    def test_json_fence(self):
        """Should drop ```json fences and keep the content."""
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_untyped_fence(self):
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


class TestExtractJsonObject:
    """Test the extract_json_object function."""

    def test_pure_json_object(self):
        """Should parse a pure JSON object."""
        response = '{"analyses": [], "count": 0}'
        assert extract_json_object(response) == {"analyses": [], "count": 0}

    def test_json_code_block(self):
        """Should extract JSON from a ```json code block with prose around it."""
        response = """Here is the analysis:
```json
{"analyses": [{"fragmentIndex": 0, "concepts": ["flight search"]}]}
```
Let me know if you need more."""
        result = extract_json_object(response)
        assert result["analyses"][0]["concepts"] == ["flight search"]

    def test_embedded_object(self):
        """Should extract an object embedded in prose."""
        response = 'Result: {"relationships": []} done'
        assert extract_json_object(response) == {"relationships": []}

    def test_nested_objects(self):
        """Greedy match should keep nested braces intact."""
        response = 'x {"a": {"b": {"c": 1}}} y'
        assert extract_json_object(response) == {"a": {"b": {"c": 1}}}

    def test_truncated_response_returns_none(self):
        """A response cut off mid-object should not parse."""
        response = '{"analyses": [{"fragmentIndex": 0, "concepts": ["a"'
        assert extract_json_object(response) is None

    def test_invalid_json_returns_none(self):
        assert extract_json_object("{not: valid json}") is None

    def test_no_object_returns_none(self):
        assert extract_json_object("I could not analyze these fragments.") is None

    def test_array_is_not_an_object(self):
        """Top-level arrays are not accepted."""
        assert extract_json_object("[1, 2, 3]") is None

    def test_empty_and_none(self):
        assert extract_json_object("") is None
        assert extract_json_object(None) is None


class TestExtractJsonOrDefault:
    """Test the extract_json_or_default function."""

    def test_returns_parsed_value(self):
        assert extract_json_or_default('{"a": 1}', default={}) == {"a": 1}

    def test_returns_default_on_failure(self):
        default = {"analyses": []}
        assert extract_json_or_default("garbage", default=default) is default
