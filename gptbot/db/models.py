# "структуры таблиц" (dataclass)

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

Tier = Literal["free", "premium"]
Role = Literal["system", "user", "assistant"]
PaymentStatus = Literal["pending", "completed", "refunded"]


@dataclass
class UserProfile:
    user_id: int
    # начало текущего окна счётчика daily_requests
    last_reset_date: datetime
    username: Optional[str] = None
    subscription: Tier = "free"
    daily_requests: int = 0
    # для premium: до какого момента действует
    subscription_expiry_date: Optional[datetime] = None


@dataclass
class ChatTurn:
    user_id: int
    role: Role
    content: str
    created_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class Invoice:
    invoice_id: str
    user_id: int
    amount: int
    title: str
    description: str
    payload: str  # correlation token из send_invoice
    created_at: datetime


@dataclass
class Payment:
    payment_id: str  # telegram_payment_charge_id
    invoice_id: str
    user_id: int
    amount: int
    status: PaymentStatus
    created_at: datetime


@dataclass
class UsageStats:
    user_id: int
    total_input_tokens: int = 0
    total_output_tokens: int = 0
