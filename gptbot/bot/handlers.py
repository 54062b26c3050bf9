# команды, сообщения, оплата

import logging

from aiogram import Router, F
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, ErrorEvent, LabeledPrice, Message, PreCheckoutQuery

from gptbot.bot.channel import MessageChannel
from gptbot.bot.keyboards import (
    BUY_PREMIUM, buy_premium_keyboard, help_keyboard, renew_premium_keyboard, start_keyboard
)
from gptbot.services.attachments import (
    AttachmentError, build_document_prompt, build_image_content, check_size, extract_document_text
)
from gptbot.utils.time import format_msk

logger = logging.getLogger("bot")

router = Router()

EXPIRED_TEXT = (
    "Ваша премиум подписка истекла! 😢\n"
    "Чтобы продолжить пользоваться расширенными возможностями, "
    "пожалуйста, обновите подписку командой /pay"
)
GENERIC_ERROR_TEXT = "Извините, произошла ошибка при обработке вашего сообщения."
PREMIUM_ONLY_TEXT = "Анализ изображений и файлов доступен только с премиум подпиской."


def _expiry_notifier(message: Message):
    async def notify():
        await message.answer(EXPIRED_TEXT, reply_markup=renew_premium_keyboard())
    return notify


async def send_premium_invoice(message: Message, user_id: int, billing):
    invoice = await billing.create_invoice(user_id)
    try:
        await message.answer_invoice(
            title=invoice.title,
            description=invoice.description,
            payload=invoice.payload,
            currency="XTR",
            prices=[LabeledPrice(label=invoice.title, amount=invoice.amount)],
            provider_token="",
        )
    except Exception:
        logger.exception("user_id=%s | failed to send invoice", user_id)
        await message.answer("Произошла ошибка при создании счета. Пожалуйста, попробуйте позже.")


async def admit(message: Message, repo, subscriptions, ledger) -> bool:
    """Проверка подписки и дневного лимита. При отказе сам отвечает пользователю."""
    user_id = message.from_user.id
    admitted = await ledger.admit_request(user_id, _expiry_notifier(message))
    await repo.touch_username(user_id, message.from_user.username)
    if admitted:
        return True

    ent = await subscriptions.resolve_entitlement(user_id)
    if ent.is_premium:
        await message.answer("Вы достигли дневного лимита запросов. Попробуйте снова завтра.")
    else:
        await message.answer(
            "Вы достигли дневного лимита бесплатных запросов. Хотите купить премиум подписку?",
            reply_markup=buy_premium_keyboard(),
        )
    return False


async def premium_gate(message: Message, subscriptions, settings) -> bool:
    if not settings.premium_only_attachments:
        return True
    ent = await subscriptions.resolve_entitlement(message.from_user.id, _expiry_notifier(message))
    if ent.is_premium:
        return True
    await message.answer(PREMIUM_ONLY_TEXT, reply_markup=buy_premium_keyboard())
    return False


# --- команды ---

@router.message(CommandStart())
async def cmd_start(message: Message, repo, subscriptions, settings):
    user_id = message.from_user.id
    await subscriptions.load_profile(user_id, _expiry_notifier(message))
    await repo.touch_username(user_id, message.from_user.username)

    text = (
        "Добро пожаловать в AI бота!\n\n"
        "Наши тарифы:\n"
        f"1. Бесплатный: {settings.free_daily_limit} генераций в день\n"
        f"2. Премиум: {settings.premium_daily_limit} генераций в день\n\n"
        f"Цена премиум подписки: ⭐{settings.premium_price_stars} за {settings.premium_days} дней\n\n"
        "Используйте команду /pay для покупки премиум подписки."
    )
    await message.answer(text, reply_markup=start_keyboard())


@router.message(Command("help"))
async def cmd_help(message: Message):
    text = (
        "Доступные команды:\n"
        "/start - Перезапустить бота и посмотреть тарифы\n"
        "/profile - Посмотреть ваш профиль и статистику\n"
        "/pay - Купить премиум подписку\n"
        "/cancel_subscription - Отменить премиум подписку\n"
        "/reset - Сбросить контекст разговора\n"
        "/help - Показать это сообщение помощи"
    )
    await message.answer(text, reply_markup=help_keyboard())


@router.message(Command("profile"))
async def cmd_profile(message: Message, repo, subscriptions, ledger, settings):
    user_id = message.from_user.id
    u = await subscriptions.load_profile(user_id, _expiry_notifier(message))
    ent = subscriptions.entitlement_for(u)
    stats = await repo.get_usage_stats(user_id)

    if ent.is_premium:
        sub_info = "Подписка: premium"
        if ent.expiry:
            sub_info += f" (до {format_msk(ent.expiry, settings.tz)} мск)"
        sub_info += "\nДля отмены подписки используйте команду /cancel_subscription"
    else:
        sub_info = "Подписка: free\nДля покупки премиум подписки нажмите /pay"

    text = (
        "Это ваш профиль (/profile).\n"
        f"ID: {user_id}\n"
        f"{sub_info}\n\n"
        "Лимиты\n"
        f"осталось {ledger.remaining(u)}/{ent.daily_limit} сегодня\n"
        f"Обновление лимитов: {format_msk(ledger.next_reset(u), settings.tz)} (мск)\n\n"
        f"Токены: {stats.total_input_tokens} входящих / {stats.total_output_tokens} исходящих"
    )
    await message.answer(text)


@router.message(Command("pay"))
async def cmd_pay(message: Message, billing):
    await send_premium_invoice(message, message.from_user.id, billing)


@router.message(Command("reset"))
async def cmd_reset(message: Message, chat_context):
    await chat_context.clear(message.from_user.id)
    await message.answer("Контекст вашего разговора был сброшен.")


@router.message(Command("cancel_subscription"))
async def cmd_cancel_subscription(message: Message, subscriptions, billing):
    user_id = message.from_user.id
    ent = await subscriptions.resolve_entitlement(user_id, _expiry_notifier(message))
    if not ent.is_premium:
        await message.answer("У вас нет активной премиум подписки.")
        return

    if await billing.cancel_subscription(user_id):
        await message.answer("Ваша премиум подписка отменена. Лимиты теперь считаются по бесплатному тарифу.")
    else:
        await message.answer(
            "Произошла ошибка при отмене подписки. Пожалуйста, попробуйте позже или обратитесь в поддержку."
        )


# --- оплата ---

@router.callback_query(F.data == BUY_PREMIUM)
async def cb_buy_premium(call: CallbackQuery, billing):
    await call.answer()
    await send_premium_invoice(call.message, call.from_user.id, billing)


@router.pre_checkout_query()
async def pre_checkout(pre_checkout_query: PreCheckoutQuery, billing):
    try:
        if not await billing.validate_checkout(pre_checkout_query.invoice_payload):
            await pre_checkout_query.answer(ok=False, error_message="Инвойс не найден")
            return
        await pre_checkout_query.answer(ok=True)
    except Exception:
        logger.exception("pre-checkout failed | payload=%s", pre_checkout_query.invoice_payload)
        await pre_checkout_query.answer(ok=False, error_message="Произошла ошибка при проверке платежа")


@router.message(F.successful_payment)
async def successful_payment(message: Message, billing, settings):
    sp = message.successful_payment
    try:
        payment = await billing.confirm_payment(
            message.from_user.id,
            sp.invoice_payload,
            sp.telegram_payment_charge_id,
            sp.total_amount,
        )
    except Exception:
        logger.exception("user_id=%s | payment processing failed", message.from_user.id)
        await message.answer("Произошла ошибка при обработке платежа. Наша команда уже работает над этим.")
        return

    if payment is None:
        await message.answer(
            f"Ошибка при обработке платежа. Пожалуйста, обратитесь в поддержку: {settings.support_contact}"
        )
        return

    await message.answer(
        f"Спасибо за покупку! Ваша премиум подписка активирована на {settings.premium_days} дней."
    )


# --- сообщения в модель ---

@router.message(F.photo)
async def on_photo(message: Message, repo, subscriptions, ledger, responder, settings):
    user_id = message.from_user.id
    try:
        photo = message.photo[-1]  # самый большой размер
        check_size(photo.file_size, settings.max_file_size)
        if not await premium_gate(message, subscriptions, settings):
            return

        buf = await message.bot.download(photo)
        content = build_image_content(message.caption, buf.getvalue())

        if not await admit(message, repo, subscriptions, ledger):
            return
        stored = f"[изображение] {message.caption or ''}".strip()
        await responder.respond(user_id, content, MessageChannel(message), stored_prompt=stored)
    except AttachmentError as e:
        await message.answer(str(e))
    except Exception:
        logger.exception("user_id=%s | photo processing failed", user_id)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(F.document)
async def on_document(message: Message, repo, subscriptions, ledger, responder, settings):
    user_id = message.from_user.id
    doc = message.document
    try:
        check_size(doc.file_size, settings.max_file_size)
        if not await premium_gate(message, subscriptions, settings):
            return

        buf = await message.bot.download(doc)
        text = extract_document_text(buf.getvalue(), doc.mime_type, doc.file_name, settings.max_document_chars)
        prompt = build_document_prompt(message.caption, doc.file_name, text)

        if not await admit(message, repo, subscriptions, ledger):
            return
        stored = f"[документ {doc.file_name or ''}] {message.caption or ''}".strip()
        await responder.respond(user_id, prompt, MessageChannel(message), stored_prompt=stored)
    except AttachmentError as e:
        await message.answer(str(e))
    except Exception:
        logger.exception("user_id=%s | document processing failed", user_id)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(F.text)
async def on_text(message: Message, repo, subscriptions, ledger, responder):
    user_id = message.from_user.id
    user_text = (message.text or "").strip()
    if not user_text:
        return

    logger.info("user_id=%s | user_input='%s'", user_id, user_text[:300].replace("\n", " "))

    try:
        if not await admit(message, repo, subscriptions, ledger):
            return
        await responder.respond(user_id, user_text, MessageChannel(message))
    except Exception:
        logger.exception("user_id=%s | message processing failed", user_id)
        await message.answer(GENERIC_ERROR_TEXT)


@router.errors()
async def on_error(event: ErrorEvent):
    # последний рубеж: ошибка не должна уронить обработку следующих апдейтов
    logger.exception("unhandled error in update %s", event.update.update_id, exc_info=event.exception)
    message = event.update.message
    if message is not None:
        try:
            await message.answer(GENERIC_ERROR_TEXT)
        except Exception:
            logger.exception("failed to send error reply")
    return True
