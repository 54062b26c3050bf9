from aiogram import Bot
from aiogram.types import Message


class MessageChannel:
    """Отправка и редактирование сообщений в чате, откуда пришел запрос."""

    def __init__(self, message: Message):
        self.bot: Bot = message.bot
        self.chat_id = message.chat.id
        self._message = message

    async def send(self, text: str) -> int:
        sent = await self._message.answer(text)
        return sent.message_id

    async def edit(self, handle: int, text: str) -> None:
        await self.bot.edit_message_text(text=text, chat_id=self.chat_id, message_id=handle)
