from taskloop.context_window import ContextWindowManager, digest_messages
from taskloop.messages import Message


def _messages(count: int, chars: int) -> list[Message]:
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"{i:04d}" + "x" * (chars - 4))
        for i in range(count)
    ]


def test_within_budget_is_noop():
    manager = ContextWindowManager(context_window=10_000, max_output_tokens=1_000)
    messages = _messages(10, 40)

    result = manager.truncate_if_needed(messages)

    assert not result.truncated
    assert result.messages == messages
    assert result.summary is None


def test_over_budget_keeps_trailing_fraction_and_summarizes():
    manager = ContextWindowManager(
        context_window=40_000,
        max_output_tokens=4_000,
        condense_percent=75,
    )
    messages = _messages(100, 2_000)  # 500 tokens each, 50k total

    result = manager.truncate_if_needed(messages)

    assert result.prev_tokens == 50_000
    assert len(result.messages) == 75
    assert result.messages == messages[25:]
    assert result.dropped == 25
    assert result.summary
    assert result.new_tokens == 75 * 500


def test_explicit_token_count_is_respected():
    manager = ContextWindowManager(context_window=1_000, max_output_tokens=100)
    messages = _messages(4, 8)

    assert not manager.truncate_if_needed(messages, total_tokens=900).truncated
    assert manager.truncate_if_needed(messages, total_tokens=901).truncated


def test_condensation_disabled_drops_without_summary():
    manager = ContextWindowManager(context_window=100, max_output_tokens=10, auto_condense=False)
    result = manager.truncate_if_needed(_messages(8, 400))

    assert result.dropped == 2
    assert result.summary is None


def test_force_condense_uses_overflow_retention():
    manager = ContextWindowManager(context_window=1_000_000, max_output_tokens=10, overflow_retention_percent=50)
    messages = _messages(10, 8)

    result = manager.force_condense(messages)

    assert result.messages == messages[5:]
    assert result.summary.startswith("Summary of 5 earlier messages")


def test_newest_message_is_always_kept():
    manager = ContextWindowManager(context_window=10, max_output_tokens=5, condense_percent=10)
    messages = _messages(3, 400)

    result = manager.truncate_if_needed(messages)

    assert result.messages == messages[-1:]


def test_custom_summarizer():
    manager = ContextWindowManager(
        context_window=100, max_output_tokens=10,
        summarizer=lambda dropped: f"{len(dropped)} dropped",
    )
    result = manager.truncate_if_needed(_messages(4, 400))

    assert result.summary == "1 dropped"


def test_digest_clips_long_messages():
    digest = digest_messages([Message(role="user", content="y" * 1_000)])
    assert len(digest) < 300
    assert digest.endswith("...")
