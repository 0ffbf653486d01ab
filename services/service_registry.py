"""
Service wiring shared by the entry point and the bot handlers.

The bot stores one ``MarketplaceServices`` in ``application.bot_data`` so that
handlers never build services themselves.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from services.access_control import AccessControl
from services.announcement_service import MarketplaceDirectory
from services.donation_service import DonationLedger
from services.feedback_service import FeedbackTracker
from services.notification_service import NullNotifier, Notifier
from services.offer_lifecycle_service import OfferLifecycleEngine
from services.payment_service import PaymentService
from services.transaction_service import TransactionService
from services.user_service import UserService
from services.wallet_service import WalletService

logger = logging.getLogger(__name__)

BOT_DATA_KEY = "marketplace_services"


@dataclass
class MarketplaceServices:
    users: UserService
    transactions: TransactionService
    ledger: DonationLedger
    engine: OfferLifecycleEngine
    feedback: FeedbackTracker
    directory: MarketplaceDirectory
    payments: PaymentService
    wallet: WalletService
    access: AccessControl
    notifier: Notifier


def build_services(
    session_factory=None,
    notifier: Optional[Notifier] = None,
    access_control: Optional[AccessControl] = None,
    admin_id: Optional[int] = None,
) -> MarketplaceServices:
    notifier = notifier or NullNotifier()
    users = UserService(session_factory)
    transactions = TransactionService(session_factory)
    ledger = DonationLedger(session_factory, notifier, users)
    payments = PaymentService(session_factory, user_service=users, ledger=ledger)
    engine = OfferLifecycleEngine(
        session_factory,
        notifier=notifier,
        donation_ledger=ledger,
        transaction_service=transactions,
        user_service=users,
        admin_id=admin_id,
        payment_service=payments,
    )
    services = MarketplaceServices(
        users=users,
        transactions=transactions,
        ledger=ledger,
        engine=engine,
        feedback=FeedbackTracker(session_factory),
        directory=MarketplaceDirectory(session_factory),
        payments=payments,
        wallet=WalletService(session_factory),
        access=access_control or AccessControl(),
        notifier=notifier,
    )
    logger.info(f"⚙️ Marketplace services ready (notifier={type(notifier).__name__})")
    return services


def get_services(context) -> MarketplaceServices:
    """Services stored on the running application"""
    return context.bot_data[BOT_DATA_KEY]
