from __future__ import annotations

from datetime import datetime
from typing import Callable, List

from gptbot.db.models import ChatTurn, Role
from gptbot.db.repository import Repository
from gptbot.utils.time import now_utc


class ContextStore:
    """
    История диалога. Окно: только ограничение при чтении:
    старые реплики остаются в базе, пока пользователь не сделает /reset.
    """

    def __init__(self, repo: Repository, window_size: int = 8, clock: Callable[[], datetime] = now_utc):
        self.repo = repo
        self.window_size = window_size
        self.clock = clock

    async def append_turn(self, user_id: int, role: Role, content: str) -> ChatTurn:
        return await self.repo.add_chat_turn(user_id, role, content, self.clock())

    async def load_context(self, user_id: int, window_size: int | None = None) -> List[ChatTurn]:
        size = self.window_size if window_size is None else window_size
        return await self.repo.get_recent_turns(user_id, size)

    async def clear(self, user_id: int) -> None:
        await self.repo.clear_chat_turns(user_id)
