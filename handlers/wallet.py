"""Wallet commands: /wallet and /wallet_partner <id>"""

import logging

from telegram import Update
from telegram.ext import CommandHandler, ContextTypes

from config import Config
from services.service_registry import get_services
from services.wallet_service import PartnerSummary, WalletSummary
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import NotFoundError, safe_telegram_handler

logger = logging.getLogger(__name__)

TOP_PARTNERS = 5
RECENT_PARTNER_TRANSACTIONS = 3


def format_wallet(summary: WalletSummary) -> str:
    lines = [
        "💼 Your wallet",
        "",
        f"kWh bought: {MarketDecimal.format(summary.kwh_bought)}",
        f"kWh sold: {MarketDecimal.format(summary.kwh_sold)}",
        f"Total spent: {MarketDecimal.format(summary.amount_spent)}",
        f"Total earned: {MarketDecimal.format(summary.amount_earned)}",
        f"Balance: {MarketDecimal.format(summary.balance)} kWh",
    ]
    if summary.is_admin:
        lines.append(f"Donated credit available: {MarketDecimal.format(summary.received_available_kwh)} kWh")
    elif summary.donated_kwh > 0:
        lines.append(f"kWh donated to the admin: {MarketDecimal.format(summary.donated_kwh)}")

    lines += [
        "",
        f"Completed: {summary.successful_offers}",
        f"In progress: {summary.pending_offers}",
        f"Cancelled: {summary.cancelled_offers}",
    ]

    if not summary.partners:
        lines.append("\nYou have not traded with anyone yet.")
        return "\n".join(lines)

    lines.append(f"\n🤝 Your partners ({len(summary.partners)})")
    for partner in summary.top_partners(TOP_PARTNERS):
        line = f"  • {partner.partner_name} ({partner.partner_id}): {partner.total_transactions} transactions"
        if summary.is_admin and partner.available_kwh > 0:
            line += f", {MarketDecimal.format(partner.available_kwh)} kWh available"
        lines.append(line)
    if len(summary.partners) > TOP_PARTNERS:
        lines.append(f"  …and {len(summary.partners) - TOP_PARTNERS} more")
    lines.append("\nDetails for one partner: /wallet_partner ID")
    return "\n".join(lines)


def format_partner_detail(detail: PartnerSummary, user_id: int, is_admin: bool) -> str:
    lines = [
        f"📊 Wallet with {detail.partner_name}",
        "",
        f"kWh bought: {MarketDecimal.format(detail.kwh_bought)}",
        f"kWh sold: {MarketDecimal.format(detail.kwh_sold)}",
        f"Total spent: {MarketDecimal.format(detail.amount_spent)}",
        f"Total earned: {MarketDecimal.format(detail.amount_earned)}",
        f"Completed: {detail.successful_offers}",
        f"In progress: {detail.pending_offers}",
    ]
    if is_admin and detail.donated_kwh > 0:
        lines += [
            "",
            "🎁 Donations",
            f"Total donated: {MarketDecimal.format(detail.donated_kwh)} kWh",
            f"Available: {MarketDecimal.format(detail.available_kwh)} kWh",
            f"Used: {MarketDecimal.format(detail.used_kwh)} kWh",
        ]

    if detail.transactions:
        lines.append("\n🧾 Latest transactions")
        for tx in detail.transactions[:RECENT_PARTNER_TRANSACTIONS]:
            role = "Bought" if tx.buyer_id == user_id else "Sold"
            lines.append(
                f"  • {tx.created_at:%d/%m/%Y}: {role} {MarketDecimal.format(tx.kwh_amount)} kWh "
                f"({MarketDecimal.format(tx.total_amount)})"
            )
        if len(detail.transactions) > RECENT_PARTNER_TRANSACTIONS:
            lines.append(f"  …and {len(detail.transactions) - RECENT_PARTNER_TRANSACTIONS} more")
    return "\n".join(lines)


@safe_telegram_handler
async def wallet_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    services = get_services(context)
    services.users.register_user(user)
    await message.reply_text(format_wallet(services.wallet.get_wallet_summary(user.id)))


@safe_telegram_handler
async def wallet_partner_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    if not context.args:
        await message.reply_text("Usage: /wallet_partner ID\n\nSee your partners with /wallet")
        return
    try:
        partner_id = int(context.args[0])
    except ValueError:
        await message.reply_text("❌ The partner id must be a number.")
        return

    services = get_services(context)
    services.users.register_user(user)
    try:
        detail = services.wallet.get_partner_detail(user.id, partner_id)
    except NotFoundError:
        await message.reply_text(f"❌ No history with partner {partner_id}.")
        return

    await message.reply_text(format_partner_detail(detail, user.id, Config.is_admin(user.id)))


def register_wallet_handlers(application) -> None:
    application.add_handler(CommandHandler("wallet", wallet_command))
    application.add_handler(CommandHandler("wallet_partner", wallet_partner_command))
    logger.info("✅ Wallet handlers registered")
