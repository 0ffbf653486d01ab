"""
Shared fixtures for the kWh marketplace test suite.

Each test gets its own SQLite database file, a notifier that records every
message instead of sending it, and the services wired the same way the bot
wires them.
"""

import logging
import warnings

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base, OfferStatus
from services.access_control import AccessControl, RateLimiter
from services.announcement_service import MarketplaceDirectory
from services.donation_service import DonationLedger
from services.feedback_service import FeedbackTracker
from services.notification_service import Notifier
from services.offer_lifecycle_service import OfferLifecycleEngine
from services.payment_service import PaymentService
from services.service_registry import MarketplaceServices
from services.transaction_service import TransactionService
from services.user_service import UserService
from services.wallet_service import WalletService
from utils.exception_handler import NotificationDeliveryError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# SQLite stores Numeric columns as floats and warns about it on every bind
warnings.filterwarnings("ignore", message=".*does \\*not\\* support Decimal objects natively.*")

ADMIN_ID = 1
BUYER_ID = 100
SELLER_ID = 200


class RecordingNotifier(Notifier):
    """Keeps every delivered message in memory"""

    def __init__(self):
        self.messages = []
        self.posts = []
        self.next_message_id = 1000

    async def _deliver(self, user_id, text, keyboard):
        self.messages.append({"user_id": user_id, "text": text, "keyboard": keyboard})

    async def _post(self, chat_id, text, keyboard, topic_id):
        self.next_message_id += 1
        self.posts.append({"chat_id": chat_id, "text": text, "keyboard": keyboard, "topic_id": topic_id})
        return self.next_message_id

    def sent_to(self, user_id):
        return [m for m in self.messages if m["user_id"] == user_id]

    def callback_data_for(self, user_id):
        data = []
        for message in self.sent_to(user_id):
            if message["keyboard"] is None:
                continue
            for row in message["keyboard"].inline_keyboard:
                data.extend(button.callback_data for button in row if button.callback_data)
        return data


class FailingNotifier(Notifier):
    """Transport that is always down"""

    def __init__(self):
        self.attempts = 0

    async def _deliver(self, user_id, text, keyboard):
        self.attempts += 1
        raise NotificationDeliveryError(user_id, "bot was blocked by the user")

    async def _post(self, chat_id, text, keyboard, topic_id):
        self.attempts += 1
        raise NotificationDeliveryError(chat_id, "chat not found")


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'kwh_market_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def user_service(session_factory):
    return UserService(session_factory, allow_negative_balance=False)


@pytest.fixture
def transaction_service(session_factory):
    return TransactionService(session_factory)


@pytest.fixture
def ledger(session_factory, notifier, user_service):
    return DonationLedger(session_factory, notifier, user_service)


@pytest.fixture
def offer_engine(session_factory, notifier, ledger, transaction_service, user_service, payment_service):
    return OfferLifecycleEngine(
        session_factory,
        notifier=notifier,
        donation_ledger=ledger,
        transaction_service=transaction_service,
        user_service=user_service,
        admin_id=ADMIN_ID,
        expiry_hours=24,
        payment_service=payment_service,
    )


@pytest.fixture
def tracker(session_factory):
    return FeedbackTracker(session_factory)


@pytest.fixture
def directory(session_factory):
    return MarketplaceDirectory(session_factory)


@pytest.fixture
def payment_service(session_factory, user_service, ledger):
    return PaymentService(session_factory, user_service=user_service, ledger=ledger)


@pytest.fixture
def wallet(session_factory):
    return WalletService(session_factory)


@pytest.fixture
def services(user_service, transaction_service, ledger, offer_engine, tracker, directory, payment_service, notifier, wallet):
    """Service bundle as stored in ``application.bot_data``"""
    return MarketplaceServices(
        users=user_service,
        transactions=transaction_service,
        ledger=ledger,
        engine=offer_engine,
        feedback=tracker,
        directory=directory,
        payments=payment_service,
        wallet=wallet,
        access=AccessControl(RateLimiter(max_actions=100, window_seconds=60)),
        notifier=notifier,
    )


@pytest.fixture
def offer_factory(offer_engine):
    """Async factory for pending offers between BUYER_ID and SELLER_ID"""

    async def _create(buyer_id=BUYER_ID, seller_id=SELLER_ID, **overrides):
        data = {
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "date": "24/05/2030",
            "time": "18:30",
            "brand": "Enel X",
            "location": "Via Roma 1, Milano",
            "additional_info": "Tesla Model 3",
        }
        data.update(overrides)
        return await offer_engine.create(data)

    return _create


HAPPY_PATH = (
    (OfferStatus.ACCEPTED, lambda engine, offer_id, opts: engine.accept(offer_id)),
    (OfferStatus.READY_TO_CHARGE, lambda engine, offer_id, opts: engine.buyer_ready(offer_id)),
    (OfferStatus.CHARGING_STARTED, lambda engine, offer_id, opts: engine.seller_starts_charging(offer_id)),
    (OfferStatus.CHARGING, lambda engine, offer_id, opts: engine.buyer_confirms_ok(offer_id)),
    (OfferStatus.CHARGING_COMPLETED, lambda engine, offer_id, opts: engine.buyer_declares_kwh(offer_id, opts["kwh"])),
    (OfferStatus.KWH_CONFIRMED, lambda engine, offer_id, opts: engine.buyer_submits_photo(offer_id, "photo-file-id")),
    (OfferStatus.PAYMENT_PENDING,
     lambda engine, offer_id, opts: engine.seller_sets_unit_price(offer_id, opts["unit_price"])),
    (OfferStatus.PAYMENT_SENT, lambda engine, offer_id, opts: engine.buyer_marks_paid(offer_id, "PayPal")),
    (OfferStatus.COMPLETED, lambda engine, offer_id, opts: engine.seller_confirms_receipt(offer_id)),
)


@pytest.fixture
def advance_offer(offer_engine):
    """Drive an offer along the happy path, from wherever it is, until it reaches ``target``"""
    order = [OfferStatus.PENDING] + [status for status, _ in HAPPY_PATH]

    async def _advance(offer_id, target, kwh="10", unit_price="0.30"):
        opts = {"kwh": kwh, "unit_price": unit_price}
        offer = offer_engine.get_offer(offer_id)
        start = order.index(offer.status_enum)
        for status, step in HAPPY_PATH[start:]:
            if offer.status_enum is target:
                break
            offer = await step(offer_engine, offer_id, opts)
            assert offer.status == status.value
        return offer

    return _advance
