from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from openai import AsyncOpenAI

SYSTEM_PROMPT = """
Ты - полезный AI-ассистент в Telegram.
Отвечай по существу, на языке собеседника. Длинные ответы разбивай на короткие абзацы.
Помни историю диалога.
""".strip()


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class StreamDelta:
    text: str = ""
    usage: Optional[TokenUsage] = None


class OpenAIClient:
    def __init__(self, api_key: str, base_url: str, app_title: str, timeout: float | None = None):
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers={"X-Title": app_title},
            timeout=timeout,
        )

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[StreamDelta]:
        """
        Текстовые дельты ответа по мере генерации.
        Последний чанк (без choices) несёт usage, если провайдер его отдаёт.
        """
        stream = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": SYSTEM_PROMPT}, *messages],
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
            stream_options={"include_usage": True},
        )
        async with stream:
            async for chunk in stream:
                text = ""
                if chunk.choices:
                    text = chunk.choices[0].delta.content or ""
                usage = None
                if chunk.usage is not None:
                    usage = TokenUsage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if text or usage:
                    yield StreamDelta(text=text, usage=usage)
