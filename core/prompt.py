"""
Prompt Assembler.

Responsibilities:
  - Build one prompt from the system preamble, recent conversation turns,
    retrieved excerpts and the current question
  - Keep the prompt under a hard token budget
  - On overflow drop the oldest turns first, then excerpts by ascending score;
    the current question is never truncated or dropped
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional

from core.errors import PromptTooLongError
from core.models import ChatMessage, RetrievedSource, Role
from utils.config import CONTEXT_WINDOW, PROMPT_MAX_CONTEXT_TURNS, PROMPT_MAX_EXCERPT_CHARS

logger = logging.getLogger(__name__)

SYSTEM_PREAMBLE = """You are a technical support assistant running entirely on this computer.
Answer the user's question clearly and step by step.

Rules:
- Prefer the numbered source documents below when they are relevant, and cite them like [1], [2].
- If the sources don't cover the question, say so and give general guidance.
- Never claim to have changed the user's system."""

_ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token) for when no tokenizer is loaded."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


def truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` on a word boundary, marking the cut with '...'."""
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        truncated = truncated[:last_space]
    return truncated.rstrip() + "..."


@dataclass
class AssembledPrompt:
    text: str
    token_count: int
    turns: list[ChatMessage] = field(default_factory=list)
    sources: list[RetrievedSource] = field(default_factory=list)
    dropped_turns: int = 0
    dropped_sources: int = 0


class PromptAssembler:
    """Builds token-bounded prompts."""

    def __init__(
        self,
        system_preamble: str = SYSTEM_PREAMBLE,
        max_context_turns: int = PROMPT_MAX_CONTEXT_TURNS,
        max_excerpt_chars: int = PROMPT_MAX_EXCERPT_CHARS,
        token_budget: int = CONTEXT_WINDOW,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        self.system_preamble = system_preamble
        self.max_context_turns = max_context_turns
        self.max_excerpt_chars = max_excerpt_chars
        self.token_budget = token_budget
        self.token_counter = token_counter or estimate_tokens

    def _render(self, question: str, turns: list[ChatMessage], sources: list[RetrievedSource]) -> str:
        parts = [self.system_preamble]

        if sources:
            lines = ["Source documents:"]
            for i, source in enumerate(sources, 1):
                header = f"[{i}] {source.title}"
                if source.url:
                    header += f" ({source.url})"
                lines.append(f"{header}\n{truncate_text(source.excerpt, self.max_excerpt_chars)}")
            parts.append("\n\n".join(lines))

        if turns:
            history = "\n".join(f"{_ROLE_LABELS[turn.role]}: {turn.content}" for turn in turns)
            parts.append(f"Conversation so far:\n{history}")

        parts.append(f"User: {question}\nAssistant:")
        return "\n\n".join(parts)

    def assemble(
        self,
        question: str,
        history: Optional[list[ChatMessage]] = None,
        sources: Optional[list[RetrievedSource]] = None,
        budget: Optional[int] = None,
        token_counter: Optional[Callable[[str], int]] = None,
    ) -> AssembledPrompt:
        """
        Assemble a prompt that fits ``budget`` tokens.

        Args:
            question: the current user question (kept verbatim)
            history: conversation turns, most recent last
            sources: retrieved sources in any order
            budget: token limit; defaults to the assembler's budget
            token_counter: overrides the assembler's counter for this call

        Raises:
            PromptTooLongError – the preamble and question alone exceed the budget
        """
        count = token_counter or self.token_counter
        limit = budget if budget is not None else self.token_budget

        history = list(history or [])
        recent = history[-self.max_context_turns:] if self.max_context_turns > 0 else []
        dropped_turns = len(history) - len(recent)

        # Highest score first; sorted() keeps retrieval order for equal scores.
        kept_sources = sorted(sources or [], key=lambda s: -s.score)
        dropped_sources = 0

        text = self._render(question, recent, kept_sources)
        tokens = count(text)
        while tokens > limit and (recent or kept_sources):
            if recent:
                recent.pop(0)
                dropped_turns += 1
            else:
                kept_sources.pop()
                dropped_sources += 1
            text = self._render(question, recent, kept_sources)
            tokens = count(text)

        if tokens > limit:
            raise PromptTooLongError(
                f"prompt needs {tokens} tokens with no context, budget is {limit}"
            )
        if dropped_turns or dropped_sources:
            logger.debug(
                "Prompt trimmed to %d tokens (dropped %d turns, %d sources)",
                tokens, dropped_turns, dropped_sources,
            )
        return AssembledPrompt(
            text=text,
            token_count=tokens,
            turns=recent,
            sources=kept_sources,
            dropped_turns=dropped_turns,
            dropped_sources=dropped_sources,
        )
