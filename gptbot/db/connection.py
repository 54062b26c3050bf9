from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List

from gptbot.db.models import ChatTurn, Invoice, Payment, UsageStats, UserProfile

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    user_id BIGINT PRIMARY KEY,
    username TEXT,
    subscription TEXT NOT NULL DEFAULT 'free',
    daily_requests INTEGER NOT NULL DEFAULT 0,
    last_reset_date TIMESTAMPTZ NOT NULL,
    subscription_expiry_date TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS chats (
    id BIGSERIAL PRIMARY KEY,
    user_id BIGINT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS chats_user_created_idx ON chats (user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS invoices (
    invoice_id TEXT PRIMARY KEY,
    user_id BIGINT NOT NULL,
    amount INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    payload TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL,
    user_id BIGINT NOT NULL,
    amount INTEGER NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS user_stats (
    user_id BIGINT PRIMARY KEY,
    total_input_tokens BIGINT NOT NULL DEFAULT 0,
    total_output_tokens BIGINT NOT NULL DEFAULT 0
);
"""


@dataclass
class FakeDatabase:
    users: Dict[int, UserProfile] = field(default_factory=dict)  # key = user_id
    chats: List[ChatTurn] = field(default_factory=list)
    invoices: Dict[str, Invoice] = field(default_factory=dict)  # key = payload
    payments: Dict[str, Payment] = field(default_factory=dict)  # key = payment_id
    user_stats: Dict[int, UsageStats] = field(default_factory=dict)
    _chat_id_seq: int = 0

    def next_chat_id(self) -> int:
        self._chat_id_seq += 1
        return self._chat_id_seq


async def get_db(use_fake: bool, dsn: str):
    """
    Если use_fake=True -> FakeDatabase.
    Иначе -> asyncpg pool (таблицы создаются при первом подключении).
    """
    if use_fake:
        return FakeDatabase()

    import asyncpg  # чтобы проект запускался без asyncpg, если FakeDB
    pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    return pool
