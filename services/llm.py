"""LLM client with shared rate limiting, retry logic, request size validation, and model fallback.

Every provider request (including retries) first acquires a slot from the
process-wide RateLimiter, so the provider's per-minute quota holds across
the batch analysis queue, step pool flushes and relationship discovery.
"""

import asyncio
import random
import re
import time

from openai import APIConnectionError, APIStatusError, APITimeoutError

from config import get_settings
from services.llm_providers import BaseLLMProvider, get_llm_provider
from services.rate_limiter import RateLimiter, get_rate_limiter
from utils.logging import get_logger
from utils.metrics import LLM_REQUEST_DURATION, LLM_REQUESTS_TOTAL, LLM_TOKENS_TOTAL

logger = get_logger(__name__)


def strip_thinking_tags(text: str) -> str:
    """Remove <think>...</think> tags from model output.

    Handles various formats:
    - <think>...</think>  (reasoning-model style)
    - <think attr>...</think>  (any attributes)
    - <thinking>...</thinking>
    - Unclosed tags (removes from opening tag to true end-of-string)
    """
    if not text:
        return text

    patterns = [
        r"<think\b[^>]*>.*?</think>\s*",
        r"<thinking\b[^>]*>.*?</thinking>\s*",
    ]
    for pattern in patterns:
        text = re.sub(pattern, "", text, flags=re.DOTALL | re.IGNORECASE)

    # \Z rather than $ so DOTALL runs to the true end of the string
    unclosed_patterns = [
        r"<think\b[^>]*>.*\Z",
        r"<thinking\b[^>]*>.*\Z",
    ]
    for pattern in unclosed_patterns:
        text = re.sub(pattern, "", text, flags=re.DOTALL | re.IGNORECASE)

    return text.strip()


# HTTP status codes that should trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Overhead tokens for message formatting (role labels, special tokens, etc.)
MESSAGE_OVERHEAD_TOKENS = 10


class PromptTooLargeError(ValueError):
    """Raised when the prompt exceeds the maximum allowed token count."""

    def __init__(
        self, estimated_tokens: int, max_tokens: int, message: str | None = None
    ):
        self.estimated_tokens = estimated_tokens
        self.max_tokens = max_tokens
        if message is None:
            message = (
                f"Prompt too large: estimated {estimated_tokens} tokens, "
                f"max allowed is {max_tokens} tokens"
            )
        super().__init__(message)


class LLMClient:
    """LLM client shared by every analysis path.

    Features:
    - Process-wide fixed-window rate limiting (waits, never rejects)
    - Exponential backoff with jitter for transient failures
    - Retries on 429, 500, 502, 503, 504 status codes
    - Thinking tag stripping from model output
    - Request size validation to prevent oversized prompts
    - Optional fallback to a secondary model on model-specific errors
    """

    def __init__(
        self,
        provider: BaseLLMProvider | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self.settings = get_settings()
        self.provider = provider or get_llm_provider()
        self.model = self.provider.model_name
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.fallback_model = self.settings.llm_fallback_model
        self._fallback_provider: BaseLLMProvider | None = None

    def _get_fallback_provider(self) -> BaseLLMProvider | None:
        """Get or create the provider for the fallback model, if configured."""
        if not self.fallback_model or self.fallback_model == self.model:
            return None
        if self._fallback_provider is None:
            self._fallback_provider = get_llm_provider(model=self.fallback_model)
        return self._fallback_provider

    def _estimate_tokens(self, text: str) -> int:
        """Estimate token count at roughly 4 characters per token."""
        if not text:
            return 0
        return len(text) // 4 + 1

    def _estimate_messages_tokens(self, messages: list[dict]) -> int:
        total = 0
        for msg in messages:
            total += self._estimate_tokens(msg.get("content", ""))
            total += MESSAGE_OVERHEAD_TOKENS
        return total

    def _validate_prompt_size(
        self,
        prompt: str,
        system_prompt: str = "",
        max_prompt_tokens: int | None = None,
    ) -> int:
        """Validate that the prompt size is within limits.

        Returns:
            Estimated token count

        Raises:
            PromptTooLargeError: If estimated tokens exceed the limit
        """
        if max_prompt_tokens is None:
            max_prompt_tokens = self.settings.max_prompt_tokens

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        estimated_tokens = self._estimate_messages_tokens(messages)

        if estimated_tokens > max_prompt_tokens:
            logger.error(
                f"Prompt size validation failed: estimated {estimated_tokens} tokens "
                f"exceeds max {max_prompt_tokens} tokens"
            )
            raise PromptTooLargeError(estimated_tokens, max_prompt_tokens)

        warning_threshold = max_prompt_tokens * self.settings.prompt_warning_threshold
        if estimated_tokens > warning_threshold:
            logger.warning(
                f"Prompt size approaching limit: estimated {estimated_tokens} tokens "
                f"({estimated_tokens / max_prompt_tokens * 100:.1f}% of {max_prompt_tokens} max)"
            )

        return estimated_tokens

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff (capped at 8 seconds) plus 0-1 seconds of jitter."""
        base_delay = self.settings.llm_retry_base_delay
        exponential = min(base_delay * (2**attempt), 8.0)
        jitter = random.uniform(0, 1)
        return exponential + jitter

    def _should_fallback(self, error: Exception) -> bool:
        """Check if an error is model-specific and worth retrying on the fallback model."""
        if isinstance(error, APIStatusError):
            if error.status_code in {503, 529}:
                return True
            error_msg = str(error).lower()
            if any(
                phrase in error_msg
                for phrase in ["model", "overloaded", "capacity", "unavailable"]
            ):
                return True

        return False

    def _is_retryable_error(self, error: Exception) -> bool:
        """Check if an error is transient and should be retried."""
        if isinstance(
            error, (TimeoutError, ConnectionError, APIConnectionError, APITimeoutError)
        ):
            return True

        if isinstance(error, APIStatusError):
            return error.status_code in RETRYABLE_STATUS_CODES

        return False

    def _log_token_usage(self, usage: dict | None, model: str) -> None:
        """Log token usage for cost monitoring."""
        if not usage:
            logger.debug("Token usage not available in response")
            return

        prompt_tokens = usage.get("prompt_tokens", 0) or 0
        completion_tokens = usage.get("completion_tokens", 0) or 0
        total_tokens = usage.get("total_tokens", 0) or prompt_tokens + completion_tokens

        LLM_TOKENS_TOTAL.labels(model=model, type="prompt").inc(prompt_tokens)
        LLM_TOKENS_TOTAL.labels(model=model, type="completion").inc(completion_tokens)

        logger.info(
            "LLM token usage",
            extra={
                "token_usage": {
                    "model": model,
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": total_tokens,
                }
            },
        )

    async def _generate_with_provider(
        self,
        provider: BaseLLMProvider,
        messages: list[dict],
        temperature: float,
        max_tokens: int,
        max_retries: int,
        operation: str = "complete",
    ) -> str:
        """Generate a completion with one provider, retrying transient errors.

        Raises:
            Exception: The last error once retries are exhausted, or any
                non-retryable error immediately
        """
        model = provider.model_name
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            await self.rate_limiter.acquire()
            start = time.perf_counter()
            try:
                text, usage = await provider.generate(
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )

                LLM_REQUEST_DURATION.labels(model=model).observe(
                    time.perf_counter() - start
                )
                LLM_REQUESTS_TOTAL.labels(model=model, status="success").inc()
                self._log_token_usage(usage, model)

                return strip_thinking_tags(text)

            except Exception as e:
                last_error = e
                LLM_REQUESTS_TOTAL.labels(model=model, status="error").inc()

                if not self._is_retryable_error(e):
                    logger.error(
                        f"Non-retryable error on LLM {operation} with {model}: {type(e).__name__}: {e}"
                    )
                    raise

                if attempt >= max_retries:
                    logger.error(
                        f"LLM {operation} with {model} failed after {max_retries + 1} attempts. "
                        f"Last error: {type(e).__name__}: {e}"
                    )
                    raise

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"Retryable error on attempt {attempt + 1}/{max_retries + 1} with {model}: "
                    f"{type(e).__name__}: {e}. Retrying in {backoff:.2f}s"
                )
                await asyncio.sleep(backoff)

        if last_error:
            raise last_error
        raise RuntimeError("Unexpected error in LLM complete")

    async def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int | None = None,
        validate_size: bool = True,
        operation: str = "complete",
    ) -> str:
        """Generate a completion with rate limiting, retry logic and model fallback.

        Args:
            prompt: The user prompt
            system_prompt: Optional system prompt
            temperature: Sampling temperature (default: from settings)
            max_tokens: Maximum tokens to generate (default: from settings)
            max_retries: Maximum retry attempts (default: from settings)
            validate_size: Whether to validate prompt size before sending
            operation: Label for logs (e.g., "batch_analysis")

        Returns:
            The generated text with thinking tags stripped

        Raises:
            PromptTooLargeError: If prompt exceeds max_prompt_tokens
            Exception: If retries are exhausted on both primary and fallback models
        """
        if max_retries is None:
            max_retries = self.settings.llm_max_retries
        if temperature is None:
            temperature = self.settings.llm_temperature
        if max_tokens is None:
            max_tokens = self.settings.llm_max_tokens

        if validate_size:
            self._validate_prompt_size(prompt, system_prompt)

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            return await self._generate_with_provider(
                provider=self.provider,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                max_retries=max_retries,
                operation=operation,
            )
        except Exception as primary_error:
            fallback_provider = self._get_fallback_provider()
            if not (fallback_provider and self._should_fallback(primary_error)):
                raise

            logger.warning(
                f"Primary model {self.model} failed, falling back to {self.fallback_model}",
                extra={
                    "primary_model": self.model,
                    "fallback_model": self.fallback_model,
                    "primary_error": str(primary_error),
                },
            )
            return await self._generate_with_provider(
                provider=fallback_provider,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                max_retries=max_retries,
                operation=f"{operation}_fallback",
            )

    async def close(self) -> None:
        await self.provider.close()
        if self._fallback_provider is not None:
            await self._fallback_provider.close()


_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    """Get the LLM client singleton."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client


async def close_llm_client() -> None:
    global _llm_client
    if _llm_client is not None:
        await _llm_client.close()
        _llm_client = None
