"""
Tests for conversation and credential models.
Run with: pytest tests/test_models.py
"""

from redbox.models import (
    Conversation,
    Credential,
    Message,
    MessageType,
    Usage,
    build_content,
    flatten_content,
)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------

def test_build_content_plain_text():
    assert build_content("hello") == "hello"


def test_build_content_parts_text_first():
    parts = build_content("look", image_url="http://img/1.png", file_url="http://f/doc.pdf")
    assert [p["type"] for p in parts] == ["text", "image_url", "file_url"]
    assert parts[0]["text"] == "look"
    assert parts[1]["image_url"] == {"url": "http://img/1.png"}
    assert parts[2]["file_url"] == {"url": "http://f/doc.pdf"}


def test_build_content_lo_fi_sets_low_detail():
    parts = build_content("look", image_url="http://img/1.png", lo_fi=True)
    assert parts[1]["image_url"]["detail"] == "low"


def test_flatten_content():
    assert flatten_content("plain") == "plain"
    assert flatten_content(None) == ""
    parts = build_content("see", image_url="http://img/a.png", file_url="http://f/b.pdf")
    assert flatten_content(parts) == "see\nhttp://img/a.png\nhttp://f/b.pdf"


# ---------------------------------------------------------------------------
# Message / Conversation
# ---------------------------------------------------------------------------

def test_message_role_and_parts():
    m = Message(type=MessageType.ASSISTANT, content="hi")
    assert m.role == "assistant"
    assert not m.is_multipart
    assert not m.has_part("image_url")

    v = Message(content=build_content("x", image_url="http://img/1.png"))
    assert v.role == "user"
    assert v.has_part("image_url")
    assert v.part_urls("image_url") == ["http://img/1.png"]
    assert v.part_urls("file_url") == []


def test_message_ids_are_unique():
    assert Message().id != Message().id


def test_message_dict_is_a_copy():
    """Mutating a serialized message never reaches the original."""
    m = Message(content=build_content("x", image_url="http://img/1.png"))
    data = m.to_dict()
    data["content"][1]["image_url"]["url"] = "changed"
    assert m.content[1]["image_url"]["url"] == "http://img/1.png"

    back = Message.from_dict(data)
    assert back.id == m.id
    assert back.type == MessageType.USER
    assert back.content[1]["image_url"]["url"] == "changed"


def test_conversation_round_trip():
    c = Conversation(id="c1", user_name="ana")
    c.messages.append(Message(content="hello"))
    c.messages.append(Message(type=MessageType.ASSISTANT, content="hi", usage={"total_tokens": 3}))

    back = Conversation.from_dict(c.to_dict())
    assert back.id == "c1"
    assert back.user_name == "ana"
    assert [m.role for m in back.messages] == ["user", "assistant"]
    assert back.messages[1].usage == {"total_tokens": 3}


def test_conversation_accepts_camel_case_fields():
    c = Conversation.from_dict({"id": "c2", "userName": "bo", "lastActive": 1234, "messages": []})
    assert c.user_name == "bo"
    assert c.last_active == 1234


def test_touch_moves_last_active_forward():
    c = Conversation(id="c1", last_active=0)
    c.touch()
    assert c.last_active > 0


# ---------------------------------------------------------------------------
# Credential / Usage
# ---------------------------------------------------------------------------

def test_credential_record_usage():
    cred = Credential(key="sk-test")
    cred.record_usage(1500, 0.002)
    cred.record_usage(500, 0.002)
    assert cred.queries == 2
    assert cred.tokens == 2000
    assert abs(cred.balance - 0.004) < 1e-9


def test_credential_round_trip():
    cred = Credential(key="sk-test", queries=3, tokens=900, balance=0.0018)
    assert Credential.from_dict(cred.to_dict()) == cred


def test_usage_to_dict():
    assert Usage(1, 2, 3).to_dict() == {
        "prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3,
    }
