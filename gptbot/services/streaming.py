from __future__ import annotations

import asyncio
import logging
import math
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Protocol, Union

from gptbot.db.repository import Repository
from gptbot.services.context import ContextStore
from gptbot.services.openai_client import OpenAIClient, TokenUsage
from gptbot.services.subscription import Entitlement, SubscriptionManager

logger = logging.getLogger(__name__)

# лимит длины одного сообщения в Telegram
MAX_MESSAGE_LENGTH = 4096

APOLOGY_TEXT = "Извините, произошла ошибка при обработке вашего запроса. Попробуйте ещё раз чуть позже."
EMPTY_ANSWER_TEXT = "Модель вернула пустой ответ. Попробуйте переформулировать вопрос."

PromptContent = Union[str, list[dict[str, Any]]]


class OutboundChannel(Protocol):
    async def send(self, text: str) -> Any:
        """Отправляет новое сообщение, возвращает его handle."""

    async def edit(self, handle: Any, text: str) -> None:
        """Заменяет текст ранее отправленного сообщения."""


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def prompt_as_text(content: PromptContent) -> str:
    if isinstance(content, str):
        return content
    return "\n".join(part.get("text", "") for part in content if part.get("type") == "text")


@dataclass(frozen=True)
class NoMessageSent:
    pass


@dataclass(frozen=True)
class MessageSent:
    handle: Any
    committed_text: str


class ChunkFlusher:
    """
    Копит дельты и сбрасывает их в чат: первое сообщение отправляется,
    дальше оно редактируется (текст = уже показанное + буфер).
    Сброс, когда буфер >= chunk_size или во фрагменте есть перевод строки.
    """

    def __init__(self, channel: OutboundChannel, chunk_size: int = 100):
        self.channel = channel
        self.chunk_size = chunk_size
        self.state: NoMessageSent | MessageSent = NoMessageSent()
        self.buffer = ""
        self.text = ""  # всё, что уже попало в чат
        self.operations = 0

    def feed(self, fragment: str) -> bool:
        self.buffer += fragment
        return len(self.buffer) >= self.chunk_size or "\n" in fragment

    async def flush(self) -> None:
        # пустой/пробельный текст Telegram не примет, копим дальше
        if not self.buffer.strip():
            return
        chunk = self.buffer
        state = self.state

        if isinstance(state, MessageSent) and len(state.committed_text) + len(chunk) <= MAX_MESSAGE_LENGTH:
            new_text = state.committed_text + chunk
            await self.channel.edit(state.handle, new_text)
            self.state = MessageSent(state.handle, new_text)
        else:
            handle = await self.channel.send(chunk)
            self.state = MessageSent(handle, chunk)

        self.operations += 1
        self.text += chunk
        self.buffer = ""


class StreamingResponder:
    def __init__(
        self,
        llm: OpenAIClient,
        repo: Repository,
        context: ContextStore,
        subscriptions: SubscriptionManager,
        settings,
    ):
        self.llm = llm
        self.repo = repo
        self.context = context
        self.subscriptions = subscriptions
        self.settings = settings

    def model_for(self, ent: Entitlement) -> tuple[str, int]:
        if ent.is_premium:
            return self.settings.premium_model, self.settings.premium_max_tokens
        return self.settings.free_model, self.settings.free_max_tokens

    async def respond(
        self,
        user_id: int,
        prompt_content: PromptContent,
        channel: OutboundChannel,
        *,
        stored_prompt: str | None = None,
    ) -> str | None:
        """
        Стримит ответ модели в channel и сохраняет его в контекст.
        stored_prompt: как записать реплику пользователя в историю
        (для картинок/файлов там короткая пометка, а не содержимое).
        Возвращает итоговый текст или None, если ответа не получилось.
        """
        try:
            ent = await self.subscriptions.resolve_entitlement(user_id)
            model, max_tokens = self.model_for(ent)

            history = await self.context.load_context(user_id)
            prompt_text = prompt_as_text(prompt_content)
            await self.context.append_turn(
                user_id, "user", stored_prompt if stored_prompt is not None else prompt_text
            )

            messages: list[dict[str, Any]] = [{"role": t.role, "content": t.content} for t in history]
            messages.append({"role": "user", "content": prompt_content})

            flusher = ChunkFlusher(channel, self.settings.stream_chunk_size)
            usage: TokenUsage | None = None
            try:
                async with asyncio.timeout(self.settings.stream_timeout or None):
                    deltas = self.llm.stream_chat(
                        messages,
                        model=model,
                        max_tokens=max_tokens,
                        temperature=self.settings.temperature,
                    )
                    async with aclosing(deltas):
                        async for delta in deltas:
                            if delta.usage is not None:
                                usage = delta.usage
                            if delta.text and flusher.feed(delta.text):
                                await flusher.flush()
                    await flusher.flush()
                full_response = flusher.text + flusher.buffer
            except TimeoutError:
                if not flusher.text:
                    raise
                # то, что уже показали, считаем окончательным ответом
                logger.warning(
                    "user_id=%s | stream timed out after %ss, truncated at %s chars",
                    user_id, self.settings.stream_timeout, len(flusher.text),
                )
                full_response = flusher.text
                usage = None

            logger.info(
                "user_id=%s | model=%s | tier=%s | chars=%s | ops=%s",
                user_id, model, ent.tier, len(full_response), flusher.operations,
            )

            if not full_response.strip():
                await channel.send(EMPTY_ANSWER_TEXT)
                return None

            await self.context.append_turn(user_id, "assistant", full_response)

            input_tokens = usage.input_tokens if usage and usage.input_tokens else estimate_tokens(prompt_text)
            output_tokens = usage.output_tokens if usage and usage.output_tokens else estimate_tokens(full_response)
        except Exception:
            logger.exception("user_id=%s | failed to stream completion", user_id)
            try:
                await channel.send(APOLOGY_TEXT)
            except Exception:
                logger.exception("user_id=%s | failed to send apology", user_id)
            return None

        await self._record_usage(user_id, input_tokens, output_tokens)
        return full_response

    async def _record_usage(self, user_id: int, input_tokens: int, output_tokens: int) -> None:
        try:
            await self.repo.add_token_usage(user_id, input_tokens, output_tokens)
        except Exception:
            logger.exception("user_id=%s | failed to record token usage", user_id)
