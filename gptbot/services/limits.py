# дневные лимиты запросов

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from gptbot.db.models import UserProfile
from gptbot.db.repository import Repository
from gptbot.services.subscription import ExpiryNotifier, SubscriptionManager
from gptbot.utils.locks import KeyedLock
from gptbot.utils.time import next_local_midnight, now_utc

logger = logging.getLogger(__name__)

RESET_WINDOW = timedelta(hours=24)


def reset_boundary(last_reset: datetime, policy: str, tz_name: str) -> datetime:
    if policy == "calendar":
        return next_local_midnight(last_reset, tz_name)
    return last_reset + RESET_WINDOW


def window_expired(u: UserProfile, now: datetime, policy: str, tz_name: str) -> bool:
    return now >= reset_boundary(u.last_reset_date, policy, tz_name)


class QuotaLedger:
    def __init__(
        self,
        repo: Repository,
        subscriptions: SubscriptionManager,
        settings,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repo = repo
        self.subscriptions = subscriptions
        self.settings = settings
        self.locks = locks or KeyedLock()
        self.clock = clock

    def next_reset(self, u: UserProfile) -> datetime:
        return reset_boundary(u.last_reset_date, self.settings.reset_policy, self.settings.tz)

    def remaining(self, u: UserProfile) -> int:
        limit = self.settings.daily_limit(u.subscription)
        if window_expired(u, self.clock(), self.settings.reset_policy, self.settings.tz):
            return limit
        return max(limit - u.daily_requests, 0)

    async def admit_request(self, user_id: int, notify: ExpiryNotifier | None = None) -> bool:
        # уведомление об истечении отправляем вне лока
        await self.subscriptions.resolve_entitlement(user_id, notify)

        async with self.locks(user_id):
            u = await self.subscriptions.load_profile(user_id)
            now = self.clock()

            limit = self.settings.daily_limit(u.subscription)
            if window_expired(u, now, self.settings.reset_policy, self.settings.tz):
                if await self.repo.reset_daily_requests(user_id, now, u.last_reset_date):
                    return True
                # окно уже сбросил другой процесс
            elif u.daily_requests >= limit:
                logger.info(
                    "user_id=%s | denied | tier=%s | requests=%s/%s",
                    user_id, u.subscription, u.daily_requests, limit,
                )
                return False

            if not await self.repo.increment_daily_requests(user_id, limit):
                logger.info("user_id=%s | denied | tier=%s | limit %s reached", user_id, u.subscription, limit)
                return False
            return True
