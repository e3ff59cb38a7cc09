"""Prompt Optimization - Token Reduction Before Model Calls.

Shrinks the prompt sent upstream:
1. System prompt: whitespace normalization, filler phrase removal, hard cap
2. Conversation history: keep the most recent turns, cap each turn
3. User message: hard cap

The optimizer never mutates its inputs and reports every reduction it
applied so that savings are auditable.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .query_classifier import estimate_tokens

logger = logging.getLogger(__name__)

Message = Dict[str, str]

TRUNCATION_MARKER = "..."

# Verbose phrases that add tokens without adding instructions
FILLER_PHRASES: Tuple[Pattern[str], ...] = (
    re.compile(r"please\s+note\s+that", re.IGNORECASE),
    re.compile(r"it\s+is\s+important\s+to\s+note", re.IGNORECASE),
    re.compile(r"we\s+would\s+like\s+to", re.IGNORECASE),
    re.compile(r"we\s+are\s+pleased\s+to", re.IGNORECASE),
)

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class OptimizationLimits:
    """Size limits applied by the optimizer."""

    max_history: int = 5
    max_system_prompt_length: int = 500
    max_message_length: int = 1000
    max_history_message_length: int = 500


@dataclass
class OptimizationReport:
    """Which reductions were applied and what they saved."""

    original_tokens: int
    optimized_tokens: int
    reductions: List[str] = field(default_factory=list)

    @property
    def tokens_saved(self) -> int:
        return self.original_tokens - self.optimized_tokens

    @property
    def compression_ratio(self) -> float:
        if self.original_tokens == 0:
            return 1.0
        return self.optimized_tokens / self.original_tokens


@dataclass
class OptimizedPrompt:
    """Result of prompt optimization."""

    system_prompt: str
    messages: List[Message]
    token_estimate: int
    report: OptimizationReport


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + TRUNCATION_MARKER


def _messages_tokens(messages: Sequence[Message]) -> int:
    return sum(estimate_tokens(m.get("content", "")) for m in messages)


class PromptOptimizer:
    """Reduce prompt and history size to cut token cost.

    Each step is skipped when its input is already within limits.
    """

    def __init__(self, limits: Optional[OptimizationLimits] = None):
        self._limits = limits or OptimizationLimits()

    @classmethod
    def from_settings(cls, settings) -> "PromptOptimizer":
        """Build from an ``OptimizerSettings`` section."""
        return cls(
            OptimizationLimits(
                max_history=settings.max_history,
                max_system_prompt_length=settings.max_system_prompt_length,
                max_message_length=settings.max_message_length,
                max_history_message_length=settings.max_history_message_length,
            )
        )

    @property
    def limits(self) -> OptimizationLimits:
        return self._limits

    def optimize_system_prompt(
        self, system_prompt: str, max_length: int
    ) -> Tuple[str, List[str]]:
        """Collapse whitespace, strip filler phrases, then cap the length."""
        reductions = []
        text = _WHITESPACE.sub(" ", system_prompt).strip()
        if text != system_prompt:
            reductions.append("system prompt whitespace collapsed")

        removed = 0
        for phrase in FILLER_PHRASES:
            text, count = phrase.subn("", text)
            removed += count
        if removed:
            text = _WHITESPACE.sub(" ", text).strip()
            reductions.append(f"removed {removed} filler phrase(s) from system prompt")

        if len(text) > max_length:
            text = _truncate(text, max_length)
            reductions.append(f"system prompt truncated to {max_length} characters")
        return text, reductions

    def optimize_history(
        self,
        history: Sequence[Message],
        max_history: int,
        max_message_length: int,
    ) -> Tuple[List[Message], List[str]]:
        """Keep the most recent turns and cap each turn's content."""
        reductions = []
        recent = list(history[-max_history:]) if max_history > 0 else []
        if len(recent) < len(history):
            reductions.append(
                f"conversation history reduced from {len(history)} to {len(recent)} messages"
            )

        optimized = []
        truncated = 0
        for message in recent:
            content = message.get("content", "")
            if len(content) > max_message_length:
                truncated += 1
                optimized.append({**message, "content": _truncate(content, max_message_length)})
            else:
                optimized.append(dict(message))
        if truncated:
            reductions.append(
                f"truncated {truncated} history message(s) to {max_message_length} characters"
            )
        return optimized, reductions

    def optimize(
        self,
        system_prompt: str,
        history: Optional[Sequence[Message]],
        user_message: str,
        limits: Optional[OptimizationLimits] = None,
    ) -> OptimizedPrompt:
        """Optimize a full prompt for a model call.

        Args:
            system_prompt: The system instructions
            history: Prior turns, oldest first (``role``/``content`` dicts)
            user_message: The new user message
            limits: Overrides the optimizer's default limits

        Returns:
            OptimizedPrompt whose messages end with the user message
        """
        limits = limits or self._limits
        history = history or []

        original_tokens = (
            estimate_tokens(system_prompt)
            + _messages_tokens(history)
            + estimate_tokens(user_message)
        )

        system, reductions = self.optimize_system_prompt(
            system_prompt, limits.max_system_prompt_length
        )
        recent, history_reductions = self.optimize_history(
            history, limits.max_history, limits.max_history_message_length
        )
        reductions.extend(history_reductions)

        message = user_message
        if len(message) > limits.max_message_length:
            message = _truncate(message, limits.max_message_length)
            reductions.append(f"user message truncated to {limits.max_message_length} characters")

        optimized_tokens = (
            estimate_tokens(system) + _messages_tokens(recent) + estimate_tokens(message)
        )
        report = OptimizationReport(
            original_tokens=original_tokens,
            optimized_tokens=optimized_tokens,
            reductions=reductions,
        )
        if reductions:
            logger.debug(
                f"Prompt optimized: {original_tokens} -> {optimized_tokens} tokens "
                f"({'; '.join(reductions)})"
            )

        return OptimizedPrompt(
            system_prompt=system,
            messages=recent + [{"role": "user", "content": message}],
            token_estimate=optimized_tokens,
            report=report,
        )


def minimal_system_prompt(
    has_cart: bool = False,
    has_orders: bool = False,
    has_bookings: bool = False,
) -> str:
    """Short system prompt for common queries."""
    prompt = "You are a helpful AI assistant for Shining Motors, an automotive platform. "
    if has_cart:
        prompt += "The user has items in their cart. "
    if has_orders:
        prompt += "The user has order history. "
    if has_bookings:
        prompt += "The user has service bookings. "
    prompt += "Be concise and helpful. If unsure, suggest contacting support."
    return prompt


def minimize_context(
    cart: Optional[Sequence[Dict[str, Any]]] = None,
    orders: Optional[Sequence[Dict[str, Any]]] = None,
    bookings: Optional[Sequence[Dict[str, Any]]] = None,
) -> Dict[str, Optional[List[Dict[str, Any]]]]:
    """Keep only the first few items of user context, with identifying fields."""

    def _pick(items, limit, fields):
        if items is None:
            return None
        return [{name: getter(item) for name, getter in fields} for item in items[:limit]]

    return {
        "cart": _pick(
            cart,
            3,
            [
                ("id", lambda i: i.get("id")),
                ("name", lambda i: i.get("name")),
                ("price", lambda i: i.get("price")),
            ],
        ),
        "orders": _pick(
            orders,
            2,
            [
                ("id", lambda o: o.get("id")),
                ("status", lambda o: o.get("status")),
                ("created_at", lambda o: o.get("created_at")),
            ],
        ),
        "bookings": _pick(
            bookings,
            2,
            [
                ("id", lambda b: b.get("id")),
                ("service", lambda b: (b.get("service") or {}).get("title")),
                ("date", lambda b: b.get("booking_date")),
            ],
        ),
    }
