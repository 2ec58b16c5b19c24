"""
Locate the JSON table payload inside a model reply that may carry prose or code fences around it.
"""
import logging

from errors import NoJsonFoundError

logger = logging.getLogger(__name__)


def find_balanced_span(text, start=0):
    """
    Return (begin, end) of the first balanced {...} at or after start, or None.
    Braces inside JSON strings (including escaped quotes) do not count.
    """
    begin = text.find("{", start)
    if begin == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return begin, i + 1
    return None


def extract_table_payload(response_text):
    """Return the first balanced JSON object substring of response_text, unchanged."""
    if not response_text or not isinstance(response_text, str):
        raise NoJsonFoundError("Model returned an empty response", raw_text=response_text or "")
    span = find_balanced_span(response_text)
    if span is None:
        logger.warning("extract: no balanced JSON object in %d chars", len(response_text))
        raise NoJsonFoundError("No JSON object found in model response", raw_text=response_text)
    begin, end = span
    if begin or end < len(response_text):
        logger.info("extract: trimmed %d leading / %d trailing chars", begin, len(response_text) - end)
    return response_text[begin:end]
