"""Input validation for ``POST /chat`` request bodies.

Unlike a fail-fast parser, every check here runs and records its own issue,
so a client gets the full list of problems with its payload in one
``400`` response.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from .errors import PayloadTooLarge, ValidationFailed

ROLES = ("system", "user", "assistant")

DEFAULT_MAX_MESSAGES = 100


# ---------------------------------------------------------------------------
# Validated request models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    """A single message in a chat conversation."""

    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    """Validated body for ``POST /chat``.

    Parameters
    ----------
    messages:
        Between one and ``max_messages`` chat messages, in order.
    stream:
        Whether the backend should stream its reply.
    """

    messages: tuple[ChatMessage, ...]
    stream: bool = False


class _Issues:
    """Accumulates ``{"field", "message"}`` entries."""

    def __init__(self) -> None:
        self.items: list[dict] = []

    def add(self, field: str, message: str) -> None:
        self.items.append({"field": field, "message": message})

    def raise_if_any(self) -> None:
        if self.items:
            raise ValidationFailed(self.items)


# ---------------------------------------------------------------------------
# Parsing / validation helpers
# ---------------------------------------------------------------------------


def check_content_length(raw: str | None, max_body_size: int) -> None:
    """Reject a request whose declared ``Content-Length`` is over the limit.

    Runs before the body is read so oversized payloads are never buffered.
    A missing header is allowed; the read bytes are checked afterwards.
    """
    if raw is None:
        return
    try:
        length = int(raw)
    except ValueError:
        raise ValidationFailed(
            [{"field": "body", "message": "Invalid Content-Length header"}]
        ) from None
    if length > max_body_size:
        raise PayloadTooLarge(
            f"Request body too large: {length} bytes (limit is {max_body_size} bytes)"
        )


def decode_body(raw: bytes, *, max_body_size: int) -> object:
    """Decode *raw* as JSON, enforcing the size limit on the actual bytes."""
    if len(raw) > max_body_size:
        raise PayloadTooLarge(
            f"Request body too large: {len(raw)} bytes (limit is {max_body_size} bytes)"
        )
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationFailed(
            [{"field": "body", "message": "Request body must be valid JSON"}]
        ) from None


def _validate_message(index: int, msg: object, issues: _Issues) -> ChatMessage | None:
    prefix = f"messages.{index}"
    if not isinstance(msg, dict):
        issues.add(prefix, f"Expected an object, got {type(msg).__name__}")
        return None

    ok = True
    role = msg.get("role")
    if role is None:
        issues.add(f"{prefix}.role", "Required")
        ok = False
    elif role not in ROLES:
        issues.add(
            f"{prefix}.role",
            f"Invalid role {role!r}; expected one of: {', '.join(ROLES)}",
        )
        ok = False

    content = msg.get("content")
    if content is None:
        issues.add(f"{prefix}.content", "Required")
        ok = False
    elif not isinstance(content, str):
        issues.add(
            f"{prefix}.content",
            f"Expected a string, got {type(content).__name__}",
        )
        ok = False
    elif not content:
        issues.add(f"{prefix}.content", "Message content cannot be empty")
        ok = False

    return ChatMessage(role=role, content=content) if ok else None


def _validate_messages(
    value: object, issues: _Issues, *, max_messages: int
) -> tuple[ChatMessage, ...]:
    if value is None:
        issues.add("messages", "Required")
        return ()
    if not isinstance(value, list):
        issues.add("messages", f"Expected an array, got {type(value).__name__}")
        return ()

    if len(value) == 0:
        issues.add("messages", "At least one message is required")
    elif len(value) > max_messages:
        issues.add("messages", f"Too many messages (max {max_messages})")

    result = []
    for i, msg in enumerate(value):
        validated = _validate_message(i, msg, issues)
        if validated is not None:
            result.append(validated)
    return tuple(result)


def _validate_stream(body: dict, issues: _Issues) -> bool:
    if "stream" not in body:
        return False
    value = body["stream"]
    if value is None:
        issues.add("stream", "Expected a boolean, got null")
        return False
    if not isinstance(value, bool):
        issues.add("stream", f"Expected a boolean, got {type(value).__name__}")
        return False
    return value


# ---------------------------------------------------------------------------
# Public parse function
# ---------------------------------------------------------------------------


def parse_chat_request(
    body: object,
    *,
    max_messages: int = DEFAULT_MAX_MESSAGES,
) -> ChatRequest:
    """Validate a decoded ``/chat`` body.

    Parameters
    ----------
    body:
        The decoded JSON value.
    max_messages:
        Upper bound on the number of messages.

    Raises
    ------
    ValidationFailed
        Listing every violated field.
    """
    issues = _Issues()
    if not isinstance(body, dict):
        issues.add("body", f"Expected a JSON object, got {type(body).__name__}")
        issues.raise_if_any()

    messages = _validate_messages(body.get("messages"), issues, max_messages=max_messages)
    stream = _validate_stream(body, issues)
    issues.raise_if_any()

    return ChatRequest(messages=messages, stream=stream)
