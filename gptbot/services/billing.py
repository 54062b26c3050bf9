# счета и оплата премиума (Telegram Stars)

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from gptbot.db.models import Invoice, Payment
from gptbot.db.repository import Repository
from gptbot.services.subscription import Entitlement, SubscriptionManager
from gptbot.utils.time import now_utc

logger = logging.getLogger(__name__)

INVOICE_TITLE = "Премиум подписка"


class BillingBridge:
    def __init__(
        self,
        repo: Repository,
        subscriptions: SubscriptionManager,
        settings,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repo = repo
        self.subscriptions = subscriptions
        self.settings = settings
        self.clock = clock

    async def current_entitlement(self, user_id: int) -> Entitlement:
        return await self.subscriptions.resolve_entitlement(user_id)

    async def create_invoice(self, user_id: int) -> Invoice:
        invoice = Invoice(
            invoice_id=str(uuid.uuid4()),
            user_id=user_id,
            amount=self.settings.premium_price_stars,
            title=INVOICE_TITLE,
            description=f"Премиум подписка на {self.settings.premium_days} дней",
            payload=str(uuid.uuid4()),
            created_at=self.clock(),
        )
        await self.repo.insert_invoice(invoice)
        return invoice

    async def validate_checkout(self, payload: str) -> bool:
        return await self.repo.get_invoice_by_payload(payload) is not None

    async def confirm_payment(
        self,
        user_id: int,
        payload: str,
        charge_id: str,
        total_amount: int,
    ) -> Optional[Payment]:
        """
        Записывает платеж и включает premium.
        None, если счёт по payload не найден, ничего не записано.
        """
        invoice = await self.repo.get_invoice_by_payload(payload)
        if invoice is None:
            logger.error("user_id=%s | payment for unknown invoice payload=%s charge=%s", user_id, payload, charge_id)
            return None

        payment = Payment(
            payment_id=charge_id,
            invoice_id=invoice.invoice_id,
            user_id=user_id,
            amount=total_amount,
            status="completed",
            created_at=self.clock(),
        )
        if not await self.repo.insert_payment(payment):
            # повторная доставка того же successful_payment
            recorded = await self.repo.get_payment(charge_id) or payment
            if await self._premium_covers(user_id, recorded):
                logger.warning("user_id=%s | duplicate payment charge=%s", user_id, charge_id)
                return recorded
            logger.warning("user_id=%s | payment charge=%s recorded without premium, granting", user_id, charge_id)
            payment = recorded

        await self.subscriptions.grant_premium(user_id, self.settings.premium_days)
        logger.info("user_id=%s | payment %s completed, amount=%s", user_id, charge_id, total_amount)
        return payment

    async def _premium_covers(self, user_id: int, payment: Payment) -> bool:
        """Premium уже выдан за этот платеж (срок не раньше оплаченного)."""
        ent = await self.subscriptions.resolve_entitlement(user_id)
        if not ent.is_premium:
            return False
        paid_until = payment.created_at + timedelta(days=self.settings.premium_days)
        return ent.expiry is None or ent.expiry >= paid_until

    async def cancel_subscription(self, user_id: int) -> bool:
        return await self.subscriptions.revoke_premium(user_id)
