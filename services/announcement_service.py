"""
Marketplace Directory
=====================

Sell/buy announcements. A user has at most one active announcement per type:
``replace_active`` archives the previous one, creates the new one and moves the
user's pointer in a single database transaction.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import Announcement, AnnouncementStatus, AnnouncementType, ConnectorType, User
from services.notification_service import Notifier
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import NotFoundError, ValidationError
from utils.keyboards import buy_kwh_keyboard

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("price", "connector_type", "brand", "location")


def _announcement_type(value) -> AnnouncementType:
    try:
        return AnnouncementType(value.value if isinstance(value, AnnouncementType) else str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown announcement type: {value!r}")


def _pointer_column(announcement_type: AnnouncementType):
    if announcement_type is AnnouncementType.SELL:
        return "active_sell_announcement_id"
    return "active_buy_announcement_id"


def format_announcement(announcement: Announcement, owner: Optional[User] = None) -> str:
    """Group post text for an announcement"""
    heading = "🔋 kWh for sale" if announcement.type == AnnouncementType.SELL.value else "🔌 Looking for kWh"
    lines = [heading]
    if owner is not None:
        lines.append(f"👤 {UserService.display_name(owner)}")
    lines.extend([
        f"💶 Price: {announcement.price}",
        f"🔌 Connector: {announcement.connector_type}",
        f"🏷️ Networks: {announcement.brand}",
        f"📍 Location: {announcement.location}",
    ])
    if announcement.non_activatable_brands:
        lines.append(f"🚫 Not activatable: {announcement.non_activatable_brands}")
    if announcement.additional_info:
        lines.append(f"ℹ️ {announcement.additional_info}")
    return "\n".join(lines)


class MarketplaceDirectory:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    @staticmethod
    def _validate_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        missing = [name for name in REQUIRED_FIELDS if not str(fields.get(name) or "").strip()]
        if missing:
            raise ValidationError(f"Missing announcement fields: {', '.join(missing)}")
        try:
            connector = ConnectorType(str(fields["connector_type"]).strip())
        except ValueError:
            raise ValidationError(f"Unknown connector type: {fields['connector_type']!r}")
        return {
            "price": str(fields["price"]).strip(),
            "connector_type": connector.value,
            "brand": str(fields["brand"]).strip(),
            "location": str(fields["location"]).strip(),
            "non_activatable_brands": str(fields.get("non_activatable_brands") or "").strip(),
            "additional_info": str(fields.get("additional_info") or "").strip(),
        }

    @staticmethod
    def _generate_id(session: Session, owner_id: int) -> str:
        """``<owner>_<YYYY-MM-DD>_<HH-MM>``, suffixed when the minute is already taken"""
        base_id = f"{owner_id}_{get_naive_utc_now().strftime('%Y-%m-%d_%H-%M')}"
        candidate = base_id
        suffix = 2
        while session.get(Announcement, candidate) is not None:
            candidate = f"{base_id}_{suffix}"
            suffix += 1
        return candidate

    def _create(self, session: Session, owner_id: int, announcement_type: AnnouncementType, clean: Dict[str, Any]) -> Announcement:
        UserService.ensure_user(session, owner_id)
        announcement = Announcement(
            id=self._generate_id(session, owner_id),
            type=announcement_type.value,
            owner_user_id=owner_id,
            status=AnnouncementStatus.ACTIVE.value,
            **clean,
        )
        session.add(announcement)
        session.flush()
        logger.info(f"📢 ANNOUNCEMENT_CREATED: id={announcement.id} type={announcement.type} owner={owner_id}")
        return announcement

    def create_announcement(self, owner_id: int, announcement_type, fields: Dict[str, Any]) -> Announcement:
        """
        Always creates a new active record. Callers that need the one-active
        invariant should use ``replace_active``.
        """
        announcement_type = _announcement_type(announcement_type)
        clean = self._validate_fields(fields)
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self._create(session, owner_id, announcement_type, clean)

    @staticmethod
    def _archive(session: Session, announcement_id: str) -> Announcement:
        announcement = session.get(Announcement, announcement_id)
        if announcement is None:
            raise NotFoundError("Announcement", announcement_id)
        if announcement.status != AnnouncementStatus.ARCHIVED.value:
            announcement.status = AnnouncementStatus.ARCHIVED.value
            session.flush()
            logger.info(f"🗄️ ANNOUNCEMENT_ARCHIVED: id={announcement_id}")
        return announcement

    def archive(self, announcement_id: str) -> Announcement:
        """Idempotent: archiving an archived announcement is a no-op"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self._archive(session, announcement_id)

    def get_active(self, user_id: int, announcement_type) -> Optional[Announcement]:
        announcement_type = _announcement_type(announcement_type)
        with atomic_transaction(session_factory=self.session_factory) as session:
            return session.execute(
                select(Announcement)
                .where(
                    Announcement.owner_user_id == user_id,
                    Announcement.type == announcement_type.value,
                    Announcement.status == AnnouncementStatus.ACTIVE.value,
                )
                .order_by(Announcement.created_at.desc())
            ).scalars().first()

    @staticmethod
    def _set_pointer(session: Session, user_id: int, announcement_type: AnnouncementType, announcement_id: Optional[str]) -> None:
        UserService.ensure_user(session, user_id)
        session.execute(
            update(User)
            .where(User.user_id == user_id)
            .values({_pointer_column(announcement_type): announcement_id})
            .execution_options(synchronize_session="fetch")
        )

    def set_active_pointer(self, user_id: int, announcement_type, announcement_id: Optional[str]) -> None:
        announcement_type = _announcement_type(announcement_type)
        with atomic_transaction(session_factory=self.session_factory) as session:
            self._set_pointer(session, user_id, announcement_type, announcement_id)

    def replace_active(self, owner_id: int, announcement_type, fields: Dict[str, Any]) -> Announcement:
        """Archive any active announcement of this type, create the new one and point the user at it"""
        announcement_type = _announcement_type(announcement_type)
        clean = self._validate_fields(fields)

        with atomic_transaction(session_factory=self.session_factory) as session:
            previous = session.execute(
                select(Announcement).where(
                    Announcement.owner_user_id == owner_id,
                    Announcement.type == announcement_type.value,
                    Announcement.status == AnnouncementStatus.ACTIVE.value,
                ).with_for_update()
            ).scalars().all()
            for old in previous:
                self._archive(session, old.id)

            announcement = self._create(session, owner_id, announcement_type, clean)
            self._set_pointer(session, owner_id, announcement_type, announcement.id)

        logger.info(
            f"🔁 ANNOUNCEMENT_REPLACED: owner={owner_id} type={announcement_type.value} "
            f"archived={[a.id for a in previous]} active={announcement.id}"
        )
        return announcement

    async def publish(
        self,
        announcement: Announcement,
        notifier: Notifier,
        chat_id: Optional[int] = None,
        topic_id: Optional[int] = None,
    ) -> Optional[int]:
        """
        Post the announcement to its marketplace group and remember the message id.

        Best-effort: returns None when no group is configured or delivery fails.
        """
        if chat_id is None:
            is_sell = announcement.type == AnnouncementType.SELL.value
            chat_id = Config.SELL_GROUP_ID if is_sell else Config.BUY_GROUP_ID
            topic_id = Config.SELL_TOPIC_ID if is_sell else Config.BUY_TOPIC_ID
        if chat_id is None:
            logger.warning(f"⚠️ No group configured for {announcement.type} announcements, skipping publish")
            return None

        with atomic_transaction(session_factory=self.session_factory) as session:
            owner = session.get(User, announcement.owner_user_id)
            text = format_announcement(announcement, owner)

        message_id = await notifier.post_to_chat(
            chat_id, text, buy_kwh_keyboard(announcement.id, Config.BOT_USERNAME), topic_id
        )
        if message_id is None:
            return None

        with atomic_transaction(session_factory=self.session_factory) as session:
            session.execute(
                update(Announcement)
                .where(Announcement.id == announcement.id)
                .values(message_id=message_id)
                .execution_options(synchronize_session=False)
            )
        announcement.message_id = message_id
        logger.info(f"📣 ANNOUNCEMENT_PUBLISHED: id={announcement.id} chat={chat_id} message={message_id}")
        return message_id
