"""
Telegram bot for a storefront project.

Every project has its own bot token. The web app feeds webhook updates into
a per-project Application (see get_application); `python -m tgshop.bot`
runs a single project's bot with polling instead.
"""

import logging
from datetime import datetime

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Update,
    WebAppInfo,
)
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from tgshop import config
from tgshop.orders import list_user_orders

log = logging.getLogger(__name__)

# project_id -> initialized Application
APPLICATIONS: dict[str, Application] = {}

HELP_TEXT = (
    "🆘 Help & Support\n\n"
    "Available commands:\n"
    "/start - Welcome message and main menu\n"
    "/launch - Open the mini app\n"
    "/orders - View your order history\n"
    "/help - Show this help message"
)


def mini_app_url(project_id: str) -> str:
    return f"{config.SITE_URL}/app/{project_id}"


def main_kb(project_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton("🚀 Launch Mini App", web_app=WebAppInfo(url=mini_app_url(project_id)))],
            [InlineKeyboardButton("📦 My Orders", callback_data="orders")],
            [InlineKeyboardButton("❓ Help", callback_data="help")],
        ]
    )


def format_orders(orders, total: int) -> str:
    if not orders:
        return "You have no orders yet."

    lines = [f"📦 Your orders ({len(orders)} of {total}):\n"]
    for o in orders:
        created = o.get("created_at")
        if isinstance(created, datetime):
            created_str = created.strftime("%d.%m.%Y")
        else:
            created_str = str(created or "?")
        lines.append(
            f"• {o['order_number']} | {created_str} | {o['total_amount']} | {o['status']} / {o['payment_status']}"
        )
    return "\n".join(lines)


def orders_text(context: ContextTypes.DEFAULT_TYPE, user_id: int) -> str:
    store = context.bot_data["store"]
    result = list_user_orders(store, context.bot_data["project_id"], user_id, page=1, limit=10)
    return format_orders(result["orders"], result["total"])


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user = update.effective_user
    if not user:
        return
    project_id = context.bot_data["project_id"]
    text = (
        f"🌟 Welcome to {context.bot_data['project_name']}! 🌟\n\n"
        f"Hello {user.first_name}! I'm your shopping assistant.\n\n"
        "Open the mini app to browse the catalog, fill your cart and place an order."
    )
    await update.message.reply_text(text, reply_markup=main_kb(project_id))


async def cmd_launch(update: Update, context: ContextTypes.DEFAULT_TYPE):
    project_id = context.bot_data["project_id"]
    kb = InlineKeyboardMarkup(
        [[InlineKeyboardButton("🛍️ Open shop", web_app=WebAppInfo(url=mini_app_url(project_id)))]]
    )
    await update.message.reply_text("Tap the button below to open the shop:", reply_markup=kb)


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(HELP_TEXT)


async def cmd_orders(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user = update.effective_user
    if not user:
        return
    await update.message.reply_text(orders_text(context, user.id))


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    data = query.data or ""

    if data == "orders":
        await query.answer()
        await query.edit_message_text(orders_text(context, update.effective_user.id))
        return
    if data == "help":
        await query.answer()
        await query.edit_message_text(HELP_TEXT)
        return

    await query.answer("Unknown action")


def build_app(token: str, project_id: str, project_name: str, store) -> Application:
    if not token:
        raise RuntimeError(f"Bot token is not set for project {project_id}")

    application = Application.builder().token(token).build()
    application.bot_data.update({"store": store, "project_id": project_id, "project_name": project_name})

    application.add_handler(CommandHandler("start", cmd_start))
    application.add_handler(CommandHandler("launch", cmd_launch))
    application.add_handler(CommandHandler("help", cmd_help))
    application.add_handler(CommandHandler("orders", cmd_orders))
    application.add_handler(CallbackQueryHandler(on_callback))

    return application


async def get_application(store, project_id: str):
    """Cached, initialized Application for the project, or None if it has no bot."""
    application = APPLICATIONS.get(project_id)
    if application:
        return application

    project = store.get_project(project_id)
    if not project or not project.get("telegram_bot_token"):
        log.error("Project %s not found or missing bot token", project_id)
        return None

    application = build_app(project["telegram_bot_token"], project_id, project["name"], store)
    await application.initialize()
    APPLICATIONS[project_id] = application
    return application


async def process_webhook_update(store, project_id: str, payload: dict) -> bool:
    application = await get_application(store, project_id)
    if application is None:
        return False
    update = Update.de_json(payload, application.bot)
    await application.process_update(update)
    return True


def main() -> None:
    from tgshop.db import PostgresStore

    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    if not config.TELEGRAM_BOT_TOKEN:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")
    if not config.PROJECT_ID:
        raise RuntimeError("PROJECT_ID is not set")

    store = PostgresStore()
    project = store.get_project(config.PROJECT_ID)
    name = project["name"] if project else "our shop"

    log.info("Starting bot for project %s…", config.PROJECT_ID)
    app = build_app(config.TELEGRAM_BOT_TOKEN, config.PROJECT_ID, name, store)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
