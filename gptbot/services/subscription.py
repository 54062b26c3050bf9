# free/premium и ленивая проверка истечения подписки

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from gptbot.db.models import Tier, UserProfile
from gptbot.db.repository import Repository
from gptbot.utils.time import now_utc

logger = logging.getLogger(__name__)

ExpiryNotifier = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class Entitlement:
    tier: Tier
    daily_limit: int
    expiry: Optional[datetime]

    @property
    def is_premium(self) -> bool:
        return self.tier == "premium"


class SubscriptionManager:
    def __init__(self, repo: Repository, settings, clock: Callable[[], datetime] = now_utc):
        self.repo = repo
        self.settings = settings
        self.clock = clock

    def entitlement_for(self, profile: UserProfile) -> Entitlement:
        return Entitlement(
            tier=profile.subscription,
            daily_limit=self.settings.daily_limit(profile.subscription),
            expiry=profile.subscription_expiry_date,
        )

    async def load_profile(self, user_id: int, notify: ExpiryNotifier | None = None) -> UserProfile:
        """
        Единственное место, где создаётся профиль. Заодно переводит
        истёкший premium в free (фонового джоба нет, проверяем при каждом обращении).
        """
        now = self.clock()
        profile = await self.repo.get_user(user_id)
        if profile is None:
            return await self.repo.create_user(user_id, now)

        if (
            profile.subscription == "premium"
            and profile.subscription_expiry_date is not None
            and profile.subscription_expiry_date < now
        ):
            downgraded = await self.repo.downgrade_if_expired(user_id, now)
            profile.subscription = "free"
            profile.subscription_expiry_date = None
            if downgraded:
                logger.info("user_id=%s | premium expired, downgraded to free", user_id)
                if notify is not None:
                    try:
                        await notify()
                    except Exception:
                        logger.exception("user_id=%s | failed to send expiry notice", user_id)
        return profile

    async def resolve_entitlement(self, user_id: int, notify: ExpiryNotifier | None = None) -> Entitlement:
        return self.entitlement_for(await self.load_profile(user_id, notify))

    async def grant_premium(self, user_id: int, duration_days: int) -> UserProfile:
        await self.load_profile(user_id)
        expiry = self.clock() + timedelta(days=duration_days)
        profile = await self.repo.set_premium(user_id, expiry)
        logger.info("user_id=%s | premium granted until %s", user_id, expiry.isoformat())
        return profile

    async def revoke_premium(self, user_id: int) -> bool:
        revoked = await self.repo.set_free(user_id)
        if revoked:
            logger.info("user_id=%s | premium revoked", user_id)
        return revoked
