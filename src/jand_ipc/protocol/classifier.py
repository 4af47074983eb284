"""Inbound payload classification.

The daemon does not tag its replies. A payload is whatever arrived in one
read, and it is one of:

- a JSON object or array (a structured response, or an event frame),
- an ``ERR:<reason>`` error sentinel,
- a bare text token such as ``done``, ``killed`` or ``True``.

The only way to tell them apart is to try to parse JSON and fall back to
text. Scalar JSON values (``true``, ``"x"``, ``42``) are not structured
responses and are treated as text, so a token that happens to be valid JSON
is not misclassified.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

ERROR_PREFIX = "ERR:"

# Exact tokens the daemon is known to reply with
KNOWN_TOKENS = frozenset(
    {
        "done",
        "killed",
        "already-stopped",
        "added",
        "True",
        "False",
    }
)

# Token families carrying a variable suffix
KNOWN_TOKEN_PREFIXES = (ERROR_PREFIX, "Invalid", "Option")

_decoder = json.JSONDecoder()


class ResponseKind(str, Enum):
    """Classification of an inbound payload."""

    JSON = "json"
    TEXT = "text"
    ERROR = "error"


@dataclass(frozen=True)
class ClassifiedResponse:
    """One inbound payload after classification.

    Attributes:
        kind: What the payload turned out to be.
        value: Decoded JSON for ``JSON``, otherwise the text itself.
        raw: The payload exactly as received.
    """

    kind: ResponseKind
    value: Any
    raw: str

    @property
    def is_json(self) -> bool:
        return self.kind == ResponseKind.JSON

    @property
    def is_error(self) -> bool:
        return self.kind == ResponseKind.ERROR

    @property
    def is_empty_array(self) -> bool:
        """True for a zero-length JSON array (indistinguishable from "nothing yet")."""
        return self.kind == ResponseKind.JSON and isinstance(self.value, list) and not self.value

    @property
    def is_known_token(self) -> bool:
        """True if this is text the daemon is known to send."""
        if self.kind == ResponseKind.JSON:
            return False
        return self.raw in KNOWN_TOKENS or self.raw.startswith(KNOWN_TOKEN_PREFIXES)


def classify_response(payload: str) -> ClassifiedResponse:
    """Classify a single payload.

    Args:
        payload: One message as received (surrounding whitespace is ignored).

    Returns:
        The classified payload.
    """
    text = payload.strip()
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(value, (dict, list)):
            return ClassifiedResponse(ResponseKind.JSON, value, text)

    if text.startswith(ERROR_PREFIX):
        return ClassifiedResponse(ResponseKind.ERROR, text, text)
    return ClassifiedResponse(ResponseKind.TEXT, text, text)


def split_payloads(chunk: str) -> list[str]:
    """Split one read into individual payloads.

    The protocol has no delimiter, so a read is normally exactly one
    message. When the stream coalesces writes, consecutive JSON documents
    can still be separated; the first non-JSON remainder is kept whole as a
    single text payload.

    Examples:
        >>> split_payloads('{"a":1}{"b":2}')
        ['{"a":1}', '{"b":2}']
        >>> split_payloads('{"Event":"procstart"}done')
        ['{"Event":"procstart"}', 'done']
        >>> split_payloads('done')
        ['done']
    """
    text = chunk.strip()
    payloads: list[str] = []
    idx = 0
    while idx < len(text):
        if text[idx] not in "{[":
            payloads.append(text[idx:])
            break
        try:
            _, end = _decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            payloads.append(text[idx:])
            break
        payloads.append(text[idx:end])
        idx = end
        while idx < len(text) and text[idx].isspace():
            idx += 1
    return payloads
