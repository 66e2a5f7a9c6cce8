"""
Parsing of JSON-shaped model output.

Models wrap JSON in markdown fences often enough that every caller needs the
same cleanup. parse_structured_response never raises: callers branch on
ParseResult.ok and take their rule-based path when parsing fails.
"""
import json
from dataclasses import dataclass
from typing import Any, Iterable, Optional


_FENCE_PREFIXES = ("```json", "```JSON", "```")


@dataclass
class ParseResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "ParseResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "ParseResult":
        return cls(ok=False, error=error)


def strip_fences(raw: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    cleaned = (raw or "").strip()
    for prefix in _FENCE_PREFIXES:
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_structured_response(
    raw: Optional[str],
    expected_type: type = dict,
    required_keys: Iterable[str] = (),
) -> ParseResult:
    """
    Parse model output into a JSON value of the expected type.

    Args:
        raw: Text returned by the model
        expected_type: dict or list
        required_keys: Keys that must be present when a dict is expected

    Returns:
        ParseResult with the decoded value, or the reason it could not be decoded
    """
    if raw is None or not raw.strip():
        return ParseResult.failure("empty response")

    cleaned = strip_fences(raw)
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as e:
        # Some models add a sentence before or after the object
        value = _decode_embedded_object(cleaned)
        if value is None:
            return ParseResult.failure(f"invalid JSON: {e.msg} at position {e.pos}")

    if not isinstance(value, expected_type):
        return ParseResult.failure(
            f"expected {expected_type.__name__}, got {type(value).__name__}"
        )

    if isinstance(value, dict):
        missing = [k for k in required_keys if k not in value]
        if missing:
            return ParseResult.failure(f"missing keys: {', '.join(missing)}")

    return ParseResult.success(value)


def _decode_embedded_object(text: str) -> Optional[Any]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
