"""
Общие фикстуры: in-memory FakeDatabase, управляемые часы,
фейковый чат (send/edit) и фейковая модель со стримом дельт.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from gptbot.config import Settings
from gptbot.db.connection import FakeDatabase
from gptbot.db.repository import Repository
from gptbot.services.billing import BillingBridge
from gptbot.services.context import ContextStore
from gptbot.services.limits import QuotaLedger
from gptbot.services.openai_client import StreamDelta
from gptbot.services.streaming import StreamingResponder
from gptbot.services.subscription import SubscriptionManager

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeChannel:
    """Записывает операции вида ("send"|"edit", handle, text)."""

    def __init__(self, fail_on_edit: bool = False):
        self.ops: list[tuple[str, int, str]] = []
        self.fail_on_edit = fail_on_edit
        self._next_handle = 100

    async def send(self, text: str) -> int:
        self._next_handle += 1
        self.ops.append(("send", self._next_handle, text))
        return self._next_handle

    async def edit(self, handle: int, text: str) -> None:
        if self.fail_on_edit:
            raise RuntimeError("edit failed")
        self.ops.append(("edit", handle, text))

    @property
    def kinds(self) -> list[str]:
        return [op[0] for op in self.ops]


class FakeLLM:
    def __init__(self, deltas=(), usage=None, fail_after: int | None = None, hang_after: int | None = None):
        self.deltas = list(deltas)
        self.usage = usage
        self.fail_after = fail_after
        self.hang_after = hang_after
        self.calls: list[dict] = []
        self.closed = False

    async def stream_chat(self, messages, *, model, max_tokens, temperature):
        self.calls.append(
            {"messages": messages, "model": model, "max_tokens": max_tokens, "temperature": temperature}
        )
        try:
            for i, text in enumerate(self.deltas):
                if self.fail_after is not None and i == self.fail_after:
                    raise RuntimeError("provider error")
                if self.hang_after is not None and i == self.hang_after:
                    await asyncio.sleep(3600)
                yield StreamDelta(text=text)
            if self.usage is not None:
                yield StreamDelta(usage=self.usage)
        finally:
            self.closed = True


def make_settings(**overrides) -> Settings:
    values = dict(
        free_model="test/free-model",
        premium_model="test/premium-model",
        free_max_tokens=2000,
        premium_max_tokens=4000,
        temperature=0.7,
        free_daily_limit=10,
        premium_daily_limit=100,
        reset_policy="rolling",
        tz="Europe/Moscow",
        max_context_messages=8,
        stream_chunk_size=100,
        stream_timeout=5,
        premium_days=30,
        premium_price_stars=1,
        support_contact="support@example.com",
        max_file_size=1024 * 1024,
        max_document_chars=12000,
        premium_only_attachments=True,
        use_fake_db=True,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def repo(db) -> Repository:
    return Repository(db)


@pytest.fixture
def subscriptions(repo, settings, clock) -> SubscriptionManager:
    return SubscriptionManager(repo, settings, clock=clock)


@pytest.fixture
def ledger(repo, subscriptions, settings, clock) -> QuotaLedger:
    return QuotaLedger(repo, subscriptions, settings, clock=clock)


@pytest.fixture
def chat_context(repo, clock) -> ContextStore:
    return ContextStore(repo, window_size=8, clock=clock)


@pytest.fixture
def billing(repo, subscriptions, settings, clock) -> BillingBridge:
    return BillingBridge(repo, subscriptions, settings, clock=clock)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_responder(repo, chat_context, subscriptions, settings):
    def _make(llm: FakeLLM, **overrides) -> StreamingResponder:
        cfg = make_settings(**overrides) if overrides else settings
        return StreamingResponder(llm, repo, chat_context, subscriptions, cfg)
    return _make
