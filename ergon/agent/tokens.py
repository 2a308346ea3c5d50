"""Token estimation and budget accounting."""

from __future__ import annotations

import logging
from typing import Any

from ergon.agent.models import Message, TokenUsage

logger = logging.getLogger(__name__)

# Per-message framing overhead (role markers, separators)
_MESSAGE_OVERHEAD = 4


def message_chars(message: Message) -> int:
    """Character length of everything a provider would see for ``message``."""
    if isinstance(message.content, str):
        return len(message.content)
    total = 0
    for block in message.content:
        if block.type == "text":
            total += len(block.text)
        else:
            total += len(block.name) + len(str(block.input))
    return total


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with a chars/4 heuristic and moves toward the observed ratio
    via an EMA (alpha=0.1) each time the provider reports input_tokens.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        if not isinstance(text, str):
            text = str(text)
        if not text:
            return 0
        return max(1, int(len(text) * self._ratio))

    def estimate_messages(self, messages: list[Message]) -> int:
        return sum(int(message_chars(m) * self._ratio) + _MESSAGE_OVERHEAD for m in messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


class TokenAccountant:
    """Tracks usage for one run and decides when compaction is due.

    Compaction is due once the estimated request size reaches
    ``threshold`` of the context window.
    """

    def __init__(
        self,
        context_window: int,
        threshold: float = 0.8,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.context_window = context_window
        self.threshold = threshold
        self.estimator = estimator or TokenEstimator()
        self.usage = TokenUsage()
        self.last_input_tokens = 0

    @property
    def budget(self) -> int:
        return int(self.context_window * self.threshold)

    def estimate(self, system: str, messages: list[Message], tools: list[dict[str, Any]] | None = None) -> int:
        total = self.estimator.estimate(system) + self.estimator.estimate_messages(messages)
        if tools:
            total += self.estimator.estimate(str(tools))
        return total

    def should_compact(self, estimated_tokens: int) -> bool:
        return estimated_tokens >= self.budget

    def fits(self, estimated_tokens: int) -> bool:
        return estimated_tokens <= self.context_window

    def record(self, usage: TokenUsage, input_chars: int = 0) -> None:
        """Accumulate provider-reported usage and calibrate the estimator."""
        self.usage.add(usage)
        if usage.input_tokens:
            self.last_input_tokens = usage.input_tokens
            self.estimator.calibrate(input_chars, usage.input_tokens)
        logger.debug(
            "Usage: +%d in / +%d out (run total %d), ratio=%.3f",
            usage.input_tokens, usage.output_tokens, self.usage.total, self.estimator.ratio,
        )
