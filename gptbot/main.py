import asyncio
import logging
from aiogram import Bot, Dispatcher
from aiogram.types import BotCommand

from gptbot.config import settings
from gptbot.db.connection import get_db
from gptbot.db.repository import Repository
from gptbot.bot.handlers import router as user_router
from gptbot.services.billing import BillingBridge
from gptbot.services.context import ContextStore
from gptbot.services.limits import QuotaLedger
from gptbot.services.openai_client import OpenAIClient
from gptbot.services.streaming import StreamingResponder
from gptbot.services.subscription import SubscriptionManager

BOT_COMMANDS = [
    BotCommand(command="start", description="Перезапустить бота и посмотреть тарифы"),
    BotCommand(command="profile", description="Посмотреть ваш профиль и статистику"),
    BotCommand(command="pay", description="Купить премиум подписку"),
    BotCommand(command="cancel_subscription", description="Отменить премиум подписку"),
    BotCommand(command="reset", description="Сбросить контекст разговора"),
    BotCommand(command="help", description="Показать сообщение помощи"),
]


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    bot = Bot(token=settings.bot_token)
    dp = Dispatcher()
    dp.include_router(user_router)

    db = await get_db(use_fake=settings.use_fake_db, dsn=settings.pg_dsn)
    repo = Repository(db=db)
    llm = OpenAIClient(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        app_title=settings.openrouter_app_title,
        timeout=settings.stream_timeout,
    )

    subscriptions = SubscriptionManager(repo, settings)
    ledger = QuotaLedger(repo, subscriptions, settings)
    chat_context = ContextStore(repo, window_size=settings.max_context_messages)
    responder = StreamingResponder(llm, repo, chat_context, subscriptions, settings)
    billing = BillingBridge(repo, subscriptions, settings)

    @dp.update.outer_middleware()
    async def inject(handler, event, data):
        data["repo"] = repo
        data["subscriptions"] = subscriptions
        data["ledger"] = ledger
        data["chat_context"] = chat_context
        data["responder"] = responder
        data["billing"] = billing
        data["settings"] = settings
        return await handler(event, data)

    await bot.set_my_commands(BOT_COMMANDS)
    logging.getLogger("bot").info(
        "starting | fake_db=%s | reset_policy=%s | free_model=%s | premium_model=%s",
        settings.use_fake_db, settings.reset_policy, settings.free_model, settings.premium_model,
    )
    await dp.start_polling(bot)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
