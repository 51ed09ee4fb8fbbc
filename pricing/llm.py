"""Text-completion client used by the plan extractor.

The extractor only needs ``complete(system, user) -> str``. AnthropicClient
implements it over the anthropic Python SDK; tests pass a scripted object
with the same method.

Calls are never retried here: a failed or unparseable completion is
reported to the caller, which decides what to do with that pass.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional

import anthropic

from config import EXTRACTION_MODEL, LLM_MAX_TOKENS, LLM_TEMPERATURE, LLM_TIMEOUT, get_api_key
from pricing.errors import LLMError

logger = logging.getLogger(__name__)

# USD per million tokens (input, output)
_PRICES = {
    "haiku": (0.80, 4.0),
    "sonnet": (3.0, 15.0),
    "opus": (15.0, 75.0),
}


def estimate_cost(model, input_tokens, output_tokens):
    for family, (input_price, output_price) in _PRICES.items():
        if family in model:
            return round((input_tokens * input_price + output_tokens * output_price) / 1_000_000, 4)
    return 0.0


@dataclass
class CompletionUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0


class AnthropicClient:
    """complete(system, user) over the Messages API."""

    def __init__(self, model=EXTRACTION_MODEL, api_key=None, timeout=LLM_TIMEOUT,
                 max_tokens=LLM_MAX_TOKENS, temperature=LLM_TEMPERATURE):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.last_usage: Optional[CompletionUsage] = None
        key = api_key or get_api_key()
        if not key:
            raise LLMError("no Anthropic API key configured (set ANTHROPIC_API_KEY)")
        # The SDK retries connection errors by default; this client must not
        self._client = anthropic.Anthropic(api_key=key, timeout=timeout, max_retries=0)

    def complete(self, system: str, user: str) -> str:
        start = time.time()
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except anthropic.APITimeoutError:
            raise LLMError(f"completion timed out after {self.timeout}s")
        except anthropic.APIError as e:
            raise LLMError(f"Anthropic API error: {e}")

        elapsed_ms = int((time.time() - start) * 1000)
        text = "".join(block.text for block in response.content if block.type == "text")

        usage = CompletionUsage(model=self.model, duration_ms=elapsed_ms)
        if response.usage:
            usage.input_tokens = response.usage.input_tokens
            usage.output_tokens = response.usage.output_tokens
            usage.cost_usd = estimate_cost(self.model, usage.input_tokens, usage.output_tokens)
        self.last_usage = usage

        logger.info(
            "LLM completion: model=%s in=%d out=%d cost=$%.4f %dms",
            self.model, usage.input_tokens, usage.output_tokens, usage.cost_usd, elapsed_ms,
        )
        if not text.strip():
            raise LLMError("empty response from model")
        return text
