"""
Dialectic Core — Context Compression

Chooses which prior material goes into a model call so that prompt +
context + reserved output fits the model's context window.

    budget = context_window - prompt_tokens - output_reserve

Strategies are plain objects with one method,
`select_context(candidates, budget_tokens) -> list[Document]`, and obey
the same rules:
  - the selected documents never add up to more than the budget,
  - the same inputs always give the same output (ties broken by id),
  - inputs are never mutated; a truncated document is a new copy.

Token counting is injectable. The default estimate is four characters
per token, rounded up.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable

from dialectic.errors import ContextWindowError, ValidationError

logger = logging.getLogger("dialectic.compression")

TokenCounter = Callable[[str], int]

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class Document:
    """A candidate piece of context."""
    id: str
    content: str
    relevance: float = 0.0
    created_at: float = 0.0
    source_type: str = "contribution"
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    truncated: bool = False


def compute_budget(
    context_window_tokens: int,
    prompt_tokens: int,
    output_reserve_tokens: int,
) -> int:
    """
    Tokens left for context. Raises ContextWindowError when the prompt
    alone does not fit the window.
    """
    if prompt_tokens >= context_window_tokens:
        raise ContextWindowError(
            f"Prompt needs {prompt_tokens} tokens but the model window is "
            f"{context_window_tokens}",
            details={
                "prompt_tokens": prompt_tokens,
                "context_window_tokens": context_window_tokens,
            },
        )
    return max(0, context_window_tokens - prompt_tokens - output_reserve_tokens)


# ═══════════════════════════════════════════════════════════════════
# Strategies
# ═══════════════════════════════════════════════════════════════════

class CompressionStrategy:
    """Base class. Subclasses define the ordering; packing is shared."""

    name = "base"

    def __init__(
        self,
        token_counter: TokenCounter = estimate_tokens,
        min_fragment_tokens: int = 64,
    ):
        self.count = token_counter
        self.min_fragment_tokens = min_fragment_tokens

    def order(self, candidates: list[Document]) -> list[Document]:
        raise NotImplementedError

    def select_context(self, candidates: list[Document], budget_tokens: int) -> list[Document]:
        if budget_tokens <= 0 or not candidates:
            return []

        selected: list[Document] = []
        remaining = budget_tokens
        for doc in self.order(list(candidates)):
            cost = self.count(doc.content)
            if cost <= remaining:
                selected.append(doc)
                remaining -= cost
                continue
            # First document that does not fit: keep a fragment if it is
            # worth it, then stop so the ordering stays meaningful.
            if remaining >= self.min_fragment_tokens:
                fragment = self._truncate(doc.content, remaining)
                if fragment:
                    selected.append(dataclasses.replace(doc, content=fragment, truncated=True))
            break
        return selected

    def _truncate(self, text: str, max_tokens: int) -> str:
        """Longest prefix of `text` whose token count is within max_tokens."""
        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.count(text[:mid]) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        return text[:lo]


class RelevanceRankedStrategy(CompressionStrategy):
    """Highest relevance first; newer first among equals; then id."""

    name = "relevance_ranked"

    def order(self, candidates):
        return sorted(candidates, key=lambda d: (-d.relevance, -d.created_at, d.id))


class RecencyFirstStrategy(CompressionStrategy):
    """Newest first; relevance breaks ties."""

    name = "recency_first"

    def order(self, candidates):
        return sorted(candidates, key=lambda d: (-d.created_at, -d.relevance, d.id))


STRATEGIES: dict[str, type[CompressionStrategy]] = {
    RelevanceRankedStrategy.name: RelevanceRankedStrategy,
    RecencyFirstStrategy.name: RecencyFirstStrategy,
}


def get_strategy(
    name: str | None = None,
    token_counter: TokenCounter = estimate_tokens,
    min_fragment_tokens: int = 64,
) -> CompressionStrategy:
    name = name or RelevanceRankedStrategy.name
    try:
        cls = STRATEGIES[name]
    except KeyError:
        raise ValidationError(
            f"Unknown compression strategy '{name}'. Known: {sorted(STRATEGIES)}",
            code="UNKNOWN_STRATEGY",
        ) from None
    return cls(token_counter=token_counter, min_fragment_tokens=min_fragment_tokens)


def tokens_used(documents: list[Document], token_counter: TokenCounter = estimate_tokens) -> int:
    return sum(token_counter(d.content) for d in documents)


def format_context(documents: list[Document]) -> str:
    """Render selected documents as one prompt section."""
    parts = []
    for doc in documents:
        title = doc.metadata.get("title") or doc.id
        suffix = " (truncated)" if doc.truncated else ""
        parts.append(f"### {title}{suffix}\n{doc.content}")
    return "\n\n".join(parts)
