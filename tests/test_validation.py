"""Tests for chat request validation.

Covers:
- parse_chat_request: messages missing / wrong type / empty / too many,
  per-message role and content checks, stream type, bad body type
- every violation is reported, not just the first
- check_content_length / decode_body: size limit and JSON decoding
"""

from __future__ import annotations

import json

import pytest

from chatgate.errors import PayloadTooLarge, ValidationFailed
from chatgate.validation import (
    ChatMessage,
    ChatRequest,
    check_content_length,
    decode_body,
    parse_chat_request,
)


def _fields(exc_info) -> list[str]:
    return [d["field"] for d in exc_info.value.details]


# ---------------------------------------------------------------------------
# Valid payloads
# ---------------------------------------------------------------------------


class TestValidChatRequests:
    def test_minimal(self):
        req = parse_chat_request({"messages": [{"role": "user", "content": "hi"}]})
        assert req == ChatRequest(messages=(ChatMessage("user", "hi"),), stream=False)

    def test_stream_flag(self):
        req = parse_chat_request({
            "messages": [{"role": "user", "content": "hi"}],
            "stream": True,
        })
        assert req.stream is True

    def test_all_roles_preserve_order(self):
        req = parse_chat_request({"messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "2+2?"},
            {"role": "assistant", "content": "4"},
        ]})
        assert [m.role for m in req.messages] == ["system", "user", "assistant"]

    def test_exactly_max_messages(self):
        msgs = [{"role": "user", "content": str(i)} for i in range(100)]
        assert len(parse_chat_request({"messages": msgs}).messages) == 100

    def test_extra_message_keys_ignored(self):
        req = parse_chat_request({"messages": [{"role": "user", "content": "hi", "name": "x"}]})
        assert req.messages[0].to_dict() == {"role": "user", "content": "hi"}

    def test_request_is_immutable(self):
        req = parse_chat_request({"messages": [{"role": "user", "content": "hi"}]})
        with pytest.raises(AttributeError):
            req.stream = True  # type: ignore[misc]


# ---------------------------------------------------------------------------
# messages field
# ---------------------------------------------------------------------------


class TestMessagesValidation:
    def test_empty_messages(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": []})
        assert exc_info.value.details == [
            {"field": "messages", "message": "At least one message is required"}
        ]

    def test_too_many_messages(self):
        msgs = [{"role": "user", "content": "x"}] * 101
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": msgs})
        assert exc_info.value.details == [
            {"field": "messages", "message": "Too many messages (max 100)"}
        ]

    def test_custom_max_messages(self):
        msgs = [{"role": "user", "content": "x"}] * 3
        with pytest.raises(ValidationFailed):
            parse_chat_request({"messages": msgs}, max_messages=2)

    def test_missing_messages(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({})
        assert _fields(exc_info) == ["messages"]

    def test_messages_not_a_list(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": "hello"})
        assert _fields(exc_info) == ["messages"]
        assert "str" in exc_info.value.details[0]["message"]

    def test_message_not_an_object(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": ["hello"]})
        assert _fields(exc_info) == ["messages.0"]

    def test_invalid_role(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": [{"role": "tool", "content": "x"}]})
        assert _fields(exc_info) == ["messages.0.role"]
        assert "'tool'" in exc_info.value.details[0]["message"]

    def test_missing_role(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": [{"content": "x"}]})
        assert _fields(exc_info) == ["messages.0.role"]

    def test_empty_content(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": [{"role": "user", "content": ""}]})
        assert exc_info.value.details == [
            {"field": "messages.0.content", "message": "Message content cannot be empty"}
        ]

    def test_non_string_content(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": [{"role": "user", "content": 42}]})
        assert _fields(exc_info) == ["messages.0.content"]


class TestAllViolationsReported:
    def test_collects_every_issue(self):
        body = {
            "messages": [
                {"role": "user", "content": "fine"},
                {"role": "robot", "content": ""},
                {"content": "no role"},
            ],
            "stream": "yes",
        }
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request(body)
        assert _fields(exc_info) == [
            "messages.1.role",
            "messages.1.content",
            "messages.2.role",
            "stream",
        ]

    def test_too_many_and_bad_entry(self):
        msgs = [{"role": "user", "content": "x"}] * 101 + [{"role": "user", "content": ""}]
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": msgs})
        assert _fields(exc_info) == ["messages", "messages.101.content"]

    def test_to_dict_shape(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": []})
        body = exc_info.value.to_dict()
        assert body["error"] == "Validation failed"
        assert body["details"][0]["field"] == "messages"


class TestBodyShape:
    @pytest.mark.parametrize("body", [[], "text", 3, None])
    def test_non_object_body(self, body):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request(body)
        assert _fields(exc_info) == ["body"]

    def test_stream_must_be_bool(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": [{"role": "user", "content": "x"}], "stream": 1})
        assert _fields(exc_info) == ["stream"]

    def test_stream_null_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_chat_request({"messages": [{"role": "user", "content": "x"}], "stream": None})
        assert exc_info.value.details == [
            {"field": "stream", "message": "Expected a boolean, got null"}
        ]

    def test_stream_omitted_defaults_false(self):
        req = parse_chat_request({"messages": [{"role": "user", "content": "x"}]})
        assert req.stream is False


# ---------------------------------------------------------------------------
# Body size and decoding
# ---------------------------------------------------------------------------


class TestBodyDecoding:
    def test_content_length_under_limit(self):
        check_content_length("100", 1024)

    def test_content_length_missing(self):
        check_content_length(None, 1024)

    def test_content_length_over_limit(self):
        with pytest.raises(PayloadTooLarge) as exc_info:
            check_content_length("2048", 1024)
        assert exc_info.value.status_code == 413
        assert "2048" in exc_info.value.message

    def test_content_length_invalid(self):
        with pytest.raises(ValidationFailed):
            check_content_length("lots", 1024)

    def test_decode_valid_json(self):
        raw = json.dumps({"messages": []}).encode()
        assert decode_body(raw, max_body_size=1024) == {"messages": []}

    def test_decode_invalid_json(self):
        with pytest.raises(ValidationFailed) as exc_info:
            decode_body(b"{not json", max_body_size=1024)
        assert _fields(exc_info) == ["body"]

    def test_decode_oversized(self):
        with pytest.raises(PayloadTooLarge):
            decode_body(b"x" * 2000, max_body_size=1024)
