"""
Offer State Machine
===================

Single source of truth for the charging-offer lifecycle.

Every action a buyer or seller can take maps to exactly one source status,
one target status and the role allowed to perform it. Notify-only actions keep
the offer in its current status. Anything not listed here is an illegal edge.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Tuple

from models import OfferStatus

logger = logging.getLogger(__name__)


class OfferRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class OfferAction(Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    BUYER_READY = "buyer_ready"
    BUYER_CANCEL = "buyer_cancel"
    SELLER_STARTS_CHARGING = "seller_starts_charging"
    BUYER_CONFIRMS_OK = "buyer_confirms_ok"
    BUYER_REPORTS_ISSUE = "buyer_reports_issue"
    BUYER_DECLARES_KWH = "buyer_declares_kwh"
    BUYER_SUBMITS_PHOTO = "buyer_submits_photo"
    SELLER_CONFIRMS_KWH = "seller_confirms_kwh"
    SELLER_DISPUTES_KWH = "seller_disputes_kwh"
    SELLER_SETS_UNIT_PRICE = "seller_sets_unit_price"
    BUYER_MARKS_PAID = "buyer_marks_paid"
    SELLER_CONFIRMS_RECEIPT = "seller_confirms_receipt"
    SELLER_DISPUTES_PAYMENT = "seller_disputes_payment"


@dataclass(frozen=True)
class TransitionRule:
    """One edge of the lifecycle graph"""
    source: OfferStatus
    target: OfferStatus
    role: OfferRole
    required: Tuple[str, ...] = ()

    @property
    def notify_only(self) -> bool:
        return self.source is self.target


TRANSITION_RULES: Dict[OfferAction, TransitionRule] = {
    OfferAction.ACCEPT: TransitionRule(
        OfferStatus.PENDING, OfferStatus.ACCEPTED, OfferRole.SELLER
    ),
    OfferAction.REJECT: TransitionRule(
        OfferStatus.PENDING, OfferStatus.REJECTED, OfferRole.SELLER, ("reason",)
    ),
    OfferAction.BUYER_READY: TransitionRule(
        OfferStatus.ACCEPTED, OfferStatus.READY_TO_CHARGE, OfferRole.BUYER
    ),
    OfferAction.BUYER_CANCEL: TransitionRule(
        OfferStatus.ACCEPTED, OfferStatus.CANCELLED, OfferRole.BUYER, ("reason",)
    ),
    OfferAction.SELLER_STARTS_CHARGING: TransitionRule(
        OfferStatus.READY_TO_CHARGE, OfferStatus.CHARGING_STARTED, OfferRole.SELLER
    ),
    OfferAction.BUYER_CONFIRMS_OK: TransitionRule(
        OfferStatus.CHARGING_STARTED, OfferStatus.CHARGING, OfferRole.BUYER
    ),
    OfferAction.BUYER_REPORTS_ISSUE: TransitionRule(
        OfferStatus.CHARGING_STARTED, OfferStatus.CHARGING_STARTED, OfferRole.BUYER, ("reason",)
    ),
    OfferAction.BUYER_DECLARES_KWH: TransitionRule(
        OfferStatus.CHARGING, OfferStatus.CHARGING_COMPLETED, OfferRole.BUYER, ("kwh",)
    ),
    OfferAction.BUYER_SUBMITS_PHOTO: TransitionRule(
        OfferStatus.CHARGING_COMPLETED, OfferStatus.KWH_CONFIRMED, OfferRole.BUYER, ("photo",)
    ),
    OfferAction.SELLER_CONFIRMS_KWH: TransitionRule(
        OfferStatus.KWH_CONFIRMED, OfferStatus.KWH_CONFIRMED, OfferRole.SELLER
    ),
    OfferAction.SELLER_DISPUTES_KWH: TransitionRule(
        OfferStatus.KWH_CONFIRMED, OfferStatus.KWH_CONFIRMED, OfferRole.SELLER, ("reason",)
    ),
    OfferAction.SELLER_SETS_UNIT_PRICE: TransitionRule(
        OfferStatus.KWH_CONFIRMED, OfferStatus.PAYMENT_PENDING, OfferRole.SELLER, ("unit_price",)
    ),
    OfferAction.BUYER_MARKS_PAID: TransitionRule(
        OfferStatus.PAYMENT_PENDING, OfferStatus.PAYMENT_SENT, OfferRole.BUYER, ("payment_method",)
    ),
    OfferAction.SELLER_CONFIRMS_RECEIPT: TransitionRule(
        OfferStatus.PAYMENT_SENT, OfferStatus.COMPLETED, OfferRole.SELLER
    ),
    OfferAction.SELLER_DISPUTES_PAYMENT: TransitionRule(
        OfferStatus.PAYMENT_SENT, OfferStatus.DISPUTED, OfferRole.SELLER, ("reason",)
    ),
}


def _build_transition_map() -> Dict[OfferStatus, Set[OfferStatus]]:
    transitions: Dict[OfferStatus, Set[OfferStatus]] = {status: set() for status in OfferStatus}
    for rule in TRANSITION_RULES.values():
        if not rule.notify_only:
            transitions[rule.source].add(rule.target)
    return transitions


class OfferStateValidator:
    """
    Validates offer status changes against the lifecycle graph.

    Terminal states (completed, rejected, cancelled, disputed) have no outgoing edges.
    """

    VALID_TRANSITIONS: Dict[OfferStatus, Set[OfferStatus]] = _build_transition_map()

    TERMINAL_STATES: FrozenSet[OfferStatus] = frozenset({
        OfferStatus.COMPLETED,
        OfferStatus.REJECTED,
        OfferStatus.CANCELLED,
        OfferStatus.DISPUTED,
    })

    @classmethod
    def get_rule(cls, action: OfferAction) -> TransitionRule:
        return TRANSITION_RULES[action]

    @classmethod
    def is_valid_transition(cls, from_status: OfferStatus, to_status: OfferStatus) -> bool:
        """Check whether a status-changing edge exists"""
        try:
            from_enum = OfferStatus(from_status)
            to_enum = OfferStatus(to_status)
        except ValueError:
            return False
        return to_enum in cls.VALID_TRANSITIONS.get(from_enum, set())

    @classmethod
    def get_valid_transitions(cls, from_status: OfferStatus) -> Set[OfferStatus]:
        return set(cls.VALID_TRANSITIONS.get(OfferStatus(from_status), set()))

    @classmethod
    def is_terminal_state(cls, status: OfferStatus) -> bool:
        return OfferStatus(status) in cls.TERMINAL_STATES

    @classmethod
    def actions_from(cls, status: OfferStatus) -> Set[OfferAction]:
        """Actions that may be invoked while an offer is in the given status"""
        status = OfferStatus(status)
        return {action for action, rule in TRANSITION_RULES.items() if rule.source is status}

    @classmethod
    def resolve_action(cls, action) -> Optional[OfferAction]:
        """Accept an OfferAction or its string value"""
        if isinstance(action, OfferAction):
            return action
        try:
            return OfferAction(str(action))
        except ValueError:
            return None
