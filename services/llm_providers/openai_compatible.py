"""Provider for OpenAI-compatible chat completion endpoints (Gemini, NVIDIA NIM)."""

from openai import AsyncOpenAI

from services.llm_providers.base import BaseLLMProvider
from utils.logging import get_logger

logger = get_logger(__name__)


class OpenAICompatibleLLMProvider(BaseLLMProvider):
    """LLM provider for any endpoint speaking the OpenAI chat completions API."""

    def __init__(self, base_url: str, api_key: str, model: str):
        self.client = AsyncOpenAI(base_url=base_url, api_key=api_key)
        self.base_url = base_url
        self._model = model

    @property
    def model_name(self) -> str:
        return self._model

    async def generate(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> tuple[str, dict]:
        response = await self.client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )

        content = response.choices[0].message.content or ""
        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens or 0,
                "completion_tokens": response.usage.completion_tokens or 0,
                "total_tokens": response.usage.total_tokens or 0,
            }

        return content, usage

    async def close(self) -> None:
        await self.client.close()
