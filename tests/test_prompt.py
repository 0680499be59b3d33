"""Tests for core/prompt.py"""

import pytest

from core.errors import PromptTooLongError
from core.models import ChatMessage, Chunk, RetrievedSource, Role, SourceMetadata
from core.prompt import PromptAssembler, estimate_tokens, truncate_text


def _word_count(text: str) -> int:
    return len(text.split())


def _source(title: str, score: float, excerpt: str = "excerpt text", url=None) -> RetrievedSource:
    chunk = Chunk(id=title, content=excerpt, metadata=SourceMetadata(title, "manual", url=url))
    return RetrievedSource(chunk=chunk, score=score, excerpt=excerpt)


def _turns(n: int) -> list[ChatMessage]:
    return [
        ChatMessage(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"turn{i} " + "word " * 5)
        for i in range(n)
    ]


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_truncate_text_on_word_boundary():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("the quick brown fox", 12) == "the quick..."


def test_prompt_contains_sources_history_and_question():
    prompt = PromptAssembler().assemble(
        "My printer is offline",
        history=[ChatMessage(Role.USER, "Hi"), ChatMessage(Role.ASSISTANT, "Hello!")],
        sources=[_source("Printer offline", 0.8, "Restart the spooler.", url="https://kb/printer")],
    )
    text = prompt.text
    assert "[1] Printer offline (https://kb/printer)" in text
    assert "Restart the spooler." in text
    assert "User: Hi\nAssistant: Hello!" in text
    assert text.endswith("User: My printer is offline\nAssistant:")


def test_sources_ordered_by_score():
    prompt = PromptAssembler().assemble("q", sources=[_source("low", 0.2), _source("high", 0.9)])
    assert prompt.text.index("[1] high") < prompt.text.index("[2] low")
    assert [s.title for s in prompt.sources] == ["high", "low"]


def test_only_recent_turns_kept():
    prompt = PromptAssembler(max_context_turns=2).assemble("q", history=_turns(5))
    assert [t.content.split()[0] for t in prompt.turns] == ["turn3", "turn4"]
    assert prompt.dropped_turns == 3
    assert "turn2" not in prompt.text


def test_overflow_drops_oldest_turns_before_sources():
    assembler = PromptAssembler(system_preamble="sys", max_context_turns=10, token_counter=_word_count)
    sources = [_source("A", 0.9, "alpha " * 5), _source("B", 0.5, "beta " * 5)]
    full = assembler.assemble("question", history=_turns(4), sources=sources)

    trimmed = assembler.assemble("question", history=_turns(4), sources=sources, budget=full.token_count - 1)

    assert trimmed.token_count <= full.token_count - 1
    assert trimmed.dropped_turns == 1
    assert trimmed.dropped_sources == 0
    assert trimmed.turns[0].content.startswith("turn1")


def test_overflow_drops_lowest_score_source_after_turns():
    assembler = PromptAssembler(system_preamble="sys", token_counter=_word_count)
    sources = [_source("A", 0.9, "alpha " * 5), _source("B", 0.5, "beta " * 5)]
    no_history = assembler.assemble("question", sources=sources)

    trimmed = assembler.assemble("question", history=_turns(2), sources=sources,
                                 budget=no_history.token_count - 1)

    assert trimmed.turns == []
    assert [s.title for s in trimmed.sources] == ["A"]
    assert "beta" not in trimmed.text


def test_question_is_never_dropped():
    assembler = PromptAssembler(system_preamble="sys", token_counter=_word_count)
    question = "why " * 20
    prompt = assembler.assemble(question, history=_turns(3), sources=[_source("A", 0.5)], budget=25)
    assert question in prompt.text
    assert prompt.token_count <= 25


def test_question_alone_over_budget_raises():
    assembler = PromptAssembler(system_preamble="sys", token_counter=_word_count)
    with pytest.raises(PromptTooLongError):
        assembler.assemble("why " * 50, budget=10)


def test_per_call_token_counter_overrides_default():
    assembler = PromptAssembler(system_preamble="sys")
    prompt = assembler.assemble("one two three", token_counter=_word_count)
    assert prompt.token_count == _word_count(prompt.text)
