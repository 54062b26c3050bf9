# клавиатуры

from aiogram.types import (
    InlineKeyboardMarkup, InlineKeyboardButton,
    ReplyKeyboardMarkup, KeyboardButton
)

BUY_PREMIUM = "buy_premium"


def start_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text="/profile"), KeyboardButton(text="/pay")],
            [KeyboardButton(text="/reset"), KeyboardButton(text="/help")],
        ],
        resize_keyboard=True,
    )


def help_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text="/profile"), KeyboardButton(text="/pay")],
            [KeyboardButton(text="/cancel_subscription"), KeyboardButton(text="/reset")],
            [KeyboardButton(text="/help")],
        ],
        resize_keyboard=True,
    )


def buy_premium_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="Купить премиум", callback_data=BUY_PREMIUM)],
    ])


def renew_premium_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="Обновить подписку", callback_data=BUY_PREMIUM)],
    ])
