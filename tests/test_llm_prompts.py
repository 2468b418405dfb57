"""Tests for prompt building and title cleanup."""

from voyagr_chat.domain.models import ChatMode, Message, MessageRole
from voyagr_chat.services.llm import (
    CONTEXT_WINDOW,
    DEFAULT_TITLE,
    MODE_INSTRUCTIONS,
    build_reply_prompt,
    build_title_prompt,
    clean_title,
)


def test_reply_prompt_uses_mode_and_destination():
    prompt = build_reply_prompt("Plan 3 days", [], ChatMode.ITINERARY, "Lisbon")

    assert prompt.startswith(MODE_INSTRUCTIONS[ChatMode.ITINERARY])
    assert "trip to Lisbon" in prompt
    assert prompt.endswith("user: Plan 3 days\nassistant:")


def test_reply_prompt_keeps_recent_history_only():
    history = [Message(role=MessageRole.USER, text=f"question {i}") for i in range(CONTEXT_WINDOW + 3)]

    prompt = build_reply_prompt("next", history)

    assert "question 0\n" not in prompt
    assert "question 2\n" not in prompt
    assert f"user: question {CONTEXT_WINDOW + 2}" in prompt


def test_reply_prompt_skips_empty_messages():
    history = [
        Message(role=MessageRole.USER, text="hi"),
        Message(role=MessageRole.ASSISTANT, text=""),
    ]
    prompt = build_reply_prompt("again", history)
    assert "assistant: \n" not in prompt


def test_title_prompt_uses_first_three_messages_truncated():
    messages = [
        Message(role=MessageRole.USER, text="a" * 300),
        Message(role=MessageRole.ASSISTANT, text="second"),
        Message(role=MessageRole.USER, text="third"),
        Message(role=MessageRole.ASSISTANT, text="fourth"),
    ]

    prompt = build_title_prompt(messages)

    assert "user: " + "a" * 200 + "\n" in prompt
    assert "a" * 201 not in prompt
    assert "third" in prompt
    assert "fourth" not in prompt


def test_clean_title():
    assert clean_title('"Tokyo Food Tour."') == "Tokyo Food Tour"
    assert clean_title("  Paris Hidden Gems!  ") == "Paris Hidden Gems"
    assert clean_title("") == DEFAULT_TITLE
    assert clean_title(None) == DEFAULT_TITLE
