"""
Tests for parsing JSON-shaped model output.
"""
from procura.services.structured_response import parse_structured_response, strip_fences


class TestStripFences:
    def test_json_fence(self):
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert strip_fences('```\n[1, 2]\n```') == "[1, 2]"

    def test_no_fence_is_trimmed(self):
        assert strip_fences('  {"a": 1}\n') == '{"a": 1}'


class TestParseStructuredResponse:
    """Model output parsing never raises; failures come back as ParseResult."""

    def test_plain_object(self):
        result = parse_structured_response('{"vendor_name": "Sigma Chemicals"}')
        assert result.ok
        assert result.value == {"vendor_name": "Sigma Chemicals"}

    def test_fenced_object(self):
        result = parse_structured_response('```json\n{"explanation": "Higher than peers"}\n```')
        assert result.ok
        assert result.value["explanation"] == "Higher than peers"

    def test_object_with_surrounding_prose(self):
        raw = 'Here is the analysis:\n{"suggestedMessage": "Can you do better?"}\nHope this helps.'
        result = parse_structured_response(raw, required_keys=("suggestedMessage",))
        assert result.ok
        assert result.value["suggestedMessage"] == "Can you do better?"

    def test_empty_response(self):
        result = parse_structured_response("   ")
        assert not result.ok
        assert result.error == "empty response"

    def test_none_response(self):
        assert not parse_structured_response(None).ok

    def test_invalid_json(self):
        result = parse_structured_response("not json at all")
        assert not result.ok
        assert result.error.startswith("invalid JSON")

    def test_wrong_type(self):
        result = parse_structured_response("[1, 2, 3]")
        assert not result.ok
        assert "expected dict" in result.error

    def test_list_expected(self):
        result = parse_structured_response("[1, 2, 3]", expected_type=list)
        assert result.ok
        assert result.value == [1, 2, 3]

    def test_missing_required_keys(self):
        result = parse_structured_response('{"strategy": "anchor"}', required_keys=("suggestedMessage",))
        assert not result.ok
        assert "suggestedMessage" in result.error
