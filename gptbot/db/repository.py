from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, List, Optional

from gptbot.db.models import ChatTurn, Invoice, Payment, UsageStats, UserProfile

USER_COLUMNS = "user_id, username, subscription, daily_requests, last_reset_date, subscription_expiry_date"


class Repository:
    """
    Простые операции над хранилищем: точечное чтение по user_id,
    обновление отдельных полей, выборка последних N, массовое удаление.
    Каждая мутация: один документ/одна строка, без многошаговых транзакций.
    """

    def __init__(self, db):
        self.db = db  # FakeDatabase или asyncpg.Pool

    def _is_fake(self) -> bool:
        return hasattr(self.db, "users") and hasattr(self.db, "chats")

    # -------------------- маппинг строк --------------------

    def _row_to_user(self, row: Any) -> UserProfile:
        return UserProfile(
            user_id=row["user_id"],
            username=row["username"],
            subscription=row["subscription"],
            daily_requests=row["daily_requests"],
            last_reset_date=row["last_reset_date"],
            subscription_expiry_date=row["subscription_expiry_date"],
        )

    def _row_to_turn(self, row: Any) -> ChatTurn:
        return ChatTurn(
            id=row["id"],
            user_id=row["user_id"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )

    # -------------------- users --------------------

    async def get_user(self, user_id: int) -> Optional[UserProfile]:
        if self._is_fake():
            u = self.db.users.get(user_id)
            # отдаём копию: как и из БД, это снимок, а не живой объект
            return replace(u) if u else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE user_id=$1", user_id)
            return self._row_to_user(row) if row else None

    async def create_user(self, user_id: int, now: datetime) -> UserProfile:
        """Создаёт free-профиль с нулевым счётчиком (если его ещё нет) и возвращает актуальный."""
        if self._is_fake():
            if user_id not in self.db.users:
                self.db.users[user_id] = UserProfile(user_id=user_id, last_reset_date=now)
            return replace(self.db.users[user_id])

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO users (user_id, subscription, daily_requests, last_reset_date)
                VALUES ($1, 'free', 0, $2)
                ON CONFLICT (user_id) DO NOTHING
                """,
                user_id,
                now,
            )
            row = await conn.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE user_id=$1", user_id)
            return self._row_to_user(row)

    async def touch_username(self, user_id: int, username: str | None) -> bool:
        """Пишет username, только если он изменился. True, если строка обновлена."""
        if self._is_fake():
            u = self.db.users.get(user_id)
            if u is None or u.username == username:
                return False
            u.username = username
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE users SET username=$2
                WHERE user_id=$1 AND username IS DISTINCT FROM $2
                RETURNING user_id
                """,
                user_id,
                username,
            )
            return row is not None

    async def downgrade_if_expired(self, user_id: int, now: datetime) -> bool:
        """premium с истёкшим сроком -> free. True только у того, кто реально перевёл."""
        if self._is_fake():
            u = self.db.users.get(user_id)
            if (
                u is None
                or u.subscription != "premium"
                or u.subscription_expiry_date is None
                or u.subscription_expiry_date >= now
            ):
                return False
            u.subscription = "free"
            u.subscription_expiry_date = None
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE users
                SET subscription='free',
                    subscription_expiry_date=NULL
                WHERE user_id=$1
                  AND subscription='premium'
                  AND subscription_expiry_date IS NOT NULL
                  AND subscription_expiry_date < $2
                RETURNING user_id
                """,
                user_id,
                now,
            )
            return row is not None

    async def set_premium(self, user_id: int, expiry: datetime) -> Optional[UserProfile]:
        if self._is_fake():
            u = self.db.users.get(user_id)
            if u is None:
                return None
            u.subscription = "premium"
            u.subscription_expiry_date = expiry
            return replace(u)

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE users
                SET subscription='premium',
                    subscription_expiry_date=$2
                WHERE user_id=$1
                RETURNING {USER_COLUMNS}
                """,
                user_id,
                expiry,
            )
            return self._row_to_user(row) if row else None

    async def set_free(self, user_id: int) -> bool:
        """Снимает premium. False, если менять было нечего."""
        if self._is_fake():
            u = self.db.users.get(user_id)
            if u is None or u.subscription != "premium":
                return False
            u.subscription = "free"
            u.subscription_expiry_date = None
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE users
                SET subscription='free',
                    subscription_expiry_date=NULL
                WHERE user_id=$1 AND subscription='premium'
                RETURNING user_id
                """,
                user_id,
            )
            return row is not None

    async def reset_daily_requests(self, user_id: int, now: datetime, window_start: datetime) -> bool:
        """
        Новое окно: счётчик сразу 1 (текущий запрос), окно начинается с now.
        Только если окно всё ещё начинается с window_start, иначе False.
        """
        if self._is_fake():
            u = self.db.users[user_id]
            if u.last_reset_date != window_start:
                return False
            u.daily_requests = 1
            u.last_reset_date = now
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE users
                SET daily_requests=1, last_reset_date=$2
                WHERE user_id=$1 AND last_reset_date=$3
                RETURNING user_id
                """,
                user_id,
                now,
                window_start,
            )
            return row is not None

    async def increment_daily_requests(self, user_id: int, limit: int) -> bool:
        """+1 к счётчику, только если он ещё ниже limit. False, если лимит уже выбран."""
        if self._is_fake():
            u = self.db.users[user_id]
            if u.daily_requests >= limit:
                return False
            u.daily_requests += 1
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE users
                SET daily_requests = daily_requests + 1
                WHERE user_id=$1 AND daily_requests < $2
                RETURNING daily_requests
                """,
                user_id,
                limit,
            )
            return row is not None

    # -------------------- chats (контекст) --------------------

    async def add_chat_turn(self, user_id: int, role: str, content: str, now: datetime) -> ChatTurn:
        if self._is_fake():
            turn = ChatTurn(
                id=self.db.next_chat_id(),
                user_id=user_id,
                role=role,
                content=content,
                created_at=now,
            )
            self.db.chats.append(turn)
            return turn

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO chats (user_id, role, content, created_at)
                VALUES ($1, $2, $3, $4)
                RETURNING id, user_id, role, content, created_at
                """,
                user_id,
                role,
                content,
                now,
            )
            return self._row_to_turn(row)

    async def get_recent_turns(self, user_id: int, limit: int) -> List[ChatTurn]:
        """Последние limit реплик, в хронологическом порядке (старые первыми)."""
        if limit <= 0:
            return []
        if self._is_fake():
            items = [t for t in self.db.chats if t.user_id == user_id]
            items.sort(key=lambda t: (t.created_at, t.id))
            return [replace(t) for t in items[-limit:]]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, role, content, created_at
                FROM chats
                WHERE user_id=$1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
            return [self._row_to_turn(r) for r in reversed(rows)]

    async def clear_chat_turns(self, user_id: int) -> None:
        if self._is_fake():
            self.db.chats = [t for t in self.db.chats if t.user_id != user_id]
            return

        async with self.db.acquire() as conn:
            await conn.execute("DELETE FROM chats WHERE user_id=$1", user_id)

    # -------------------- user_stats --------------------

    async def add_token_usage(self, user_id: int, input_tokens: int, output_tokens: int) -> None:
        if self._is_fake():
            stats = self.db.user_stats.setdefault(user_id, UsageStats(user_id=user_id))
            stats.total_input_tokens += input_tokens
            stats.total_output_tokens += output_tokens
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_stats (user_id, total_input_tokens, total_output_tokens)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE
                SET total_input_tokens = user_stats.total_input_tokens + EXCLUDED.total_input_tokens,
                    total_output_tokens = user_stats.total_output_tokens + EXCLUDED.total_output_tokens
                """,
                user_id,
                input_tokens,
                output_tokens,
            )

    async def get_usage_stats(self, user_id: int) -> UsageStats:
        if self._is_fake():
            stats = self.db.user_stats.get(user_id)
            return replace(stats) if stats else UsageStats(user_id=user_id)

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, total_input_tokens, total_output_tokens FROM user_stats WHERE user_id=$1",
                user_id,
            )
            if not row:
                return UsageStats(user_id=user_id)
            return UsageStats(
                user_id=row["user_id"],
                total_input_tokens=row["total_input_tokens"],
                total_output_tokens=row["total_output_tokens"],
            )

    # -------------------- invoices / payments --------------------

    async def insert_invoice(self, invoice: Invoice) -> None:
        if self._is_fake():
            self.db.invoices[invoice.payload] = invoice
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO invoices (invoice_id, user_id, amount, title, description, payload, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                invoice.invoice_id,
                invoice.user_id,
                invoice.amount,
                invoice.title,
                invoice.description,
                invoice.payload,
                invoice.created_at,
            )

    async def get_invoice_by_payload(self, payload: str) -> Optional[Invoice]:
        if self._is_fake():
            return self.db.invoices.get(payload)

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT invoice_id, user_id, amount, title, description, payload, created_at
                FROM invoices
                WHERE payload=$1
                """,
                payload,
            )
            if not row:
                return None
            return Invoice(
                invoice_id=row["invoice_id"],
                user_id=row["user_id"],
                amount=row["amount"],
                title=row["title"],
                description=row["description"],
                payload=row["payload"],
                created_at=row["created_at"],
            )

    async def insert_payment(self, payment: Payment) -> bool:
        """False, если платеж с таким payment_id уже записан (повторная доставка)."""
        if self._is_fake():
            if payment.payment_id in self.db.payments:
                return False
            self.db.payments[payment.payment_id] = payment
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO payments (payment_id, invoice_id, user_id, amount, status, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (payment_id) DO NOTHING
                RETURNING payment_id
                """,
                payment.payment_id,
                payment.invoice_id,
                payment.user_id,
                payment.amount,
                payment.status,
                payment.created_at,
            )
            return row is not None

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        if self._is_fake():
            return self.db.payments.get(payment_id)

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT payment_id, invoice_id, user_id, amount, status, created_at
                FROM payments
                WHERE payment_id=$1
                """,
                payment_id,
            )
            if not row:
                return None
            return Payment(
                payment_id=row["payment_id"],
                invoice_id=row["invoice_id"],
                user_id=row["user_id"],
                amount=row["amount"],
                status=row["status"],
                created_at=row["created_at"],
            )
