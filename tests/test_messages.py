import pytest

from taskloop.errors import NotFoundError, ValidationError
from taskloop.messages import Message, MessageLog, estimate_tokens


def test_append_assigns_id_and_timestamp():
    log = MessageLog()
    message = log.append("user", "hello")

    assert message.id
    assert message.timestamp is not None
    assert log.all() == [message]


def test_unknown_role_is_rejected():
    log = MessageLog()
    with pytest.raises(ValidationError):
        log.append("robot", "beep")
    assert len(log) == 0


def test_patch_replaces_content_and_merges_metadata():
    log = MessageLog()
    message = log.append("assistant", "", metadata={"model": "m"})

    patched = log.patch(message.id, content="partial", metadata={"reasoning": "r"})

    assert patched.id == message.id
    assert patched.role == "assistant"
    assert patched.timestamp == message.timestamp
    assert patched.content == "partial"
    assert patched.metadata == {"model": "m", "reasoning": "r"}
    assert log.all()[0].content == "partial"


def test_patch_unknown_id():
    with pytest.raises(NotFoundError):
        MessageLog().patch("missing", content="x")


def test_since_returns_suffix():
    log = MessageLog()
    for i in range(5):
        log.append("user", str(i))

    assert [m.content for m in log.since(3)] == ["3", "4"]


def test_estimate_tokens_rounds_up_per_message():
    messages = [Message(role="user", content="abcde"), Message(role="user", content="abcd")]
    assert estimate_tokens(messages) == 2 + 1
