"""Abstract base class for LLM providers."""

from abc import ABC, abstractmethod


class BaseLLMProvider(ABC):
    """Abstract base for chat-completion providers (Gemini, NVIDIA NIM)."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> tuple[str, dict]:
        """Generate a completion.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            temperature: Sampling temperature.
            max_tokens: Max tokens to generate.

        Returns:
            Tuple of (generated_text, usage_dict).
            usage_dict should contain: {"prompt_tokens": int, "completion_tokens": int, "total_tokens": int}
        """
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier for logging."""
        ...

    async def close(self) -> None:
        """Release any underlying HTTP resources."""
        return None
