"""
Deal Lifecycle Service
======================

Party-driven operations on a deal: creation, anchoring on the ledger, release,
cancellation, reviews and reputation. Ledger-affecting operations confirm on the
ledger before the local status is committed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

from config import Config
from models import Deal, DealStatus, User
from services.access_control import AccessControl, Identity, PartyRole, normalize_handle
from services.deal_repository import DealRepository
from services.ledger_client import DEPOSITED_STATES, LedgerClient, LedgerStatus, confirm_transaction
from services.notification_service import NotificationDispatcher
from services.repositories import UserRepository
from utils.datetime_helpers import get_naive_utc_now
from utils.deal_code import generate_deal_code, normalize_wallet, parse_amount
from utils.deal_state_machine import ActorKind, DealStateMachine, DealStateValidator, Transitions
from utils.exceptions import (
    DuplicateDealCodeError,
    LedgerError,
    PersistenceError,
    StaleStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

BADGE_TIERS = (
    (50, "Elite"),
    (25, "Top Trader"),
    (10, "Trusted"),
    (3, "Verified"),
    (1, "Active"),
)


def badge_for(completed_deals: int) -> str:
    for threshold, badge in BADGE_TIERS:
        if completed_deals >= threshold:
            return badge
    return "New"


@dataclass
class ReputationSummary:
    handle: Optional[str]
    completed_deals: int
    volume: Decimal
    badge: str
    average_rating: Optional[float]
    ratings_count: int


class DealService:
    """Seller and buyer operations on deals"""

    def __init__(
        self,
        deals: DealRepository,
        users: UserRepository,
        access: AccessControl,
        state_machine: DealStateMachine,
        ledger: LedgerClient,
        notifier: NotificationDispatcher,
        code_generator: Callable[[], str] = generate_deal_code,
        max_code_attempts: int = 5,
    ):
        self.deals = deals
        self.users = users
        self.access = access
        self.state_machine = state_machine
        self.ledger = ledger
        self.notifier = notifier
        self._code_generator = code_generator
        self._max_code_attempts = max_code_attempts

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_wallet(self, identity: Identity, wallet_address: str) -> User:
        if identity.platform_id is None:
            raise ValidationError("A platform id is required to register a wallet")
        wallet = normalize_wallet(wallet_address)
        user = self.users.upsert(identity.platform_id, identity.handle, wallet)
        logger.info(f"👛 WALLET_REGISTERED: {identity.display} {wallet[:6]}...{wallet[-4:]}")
        return user

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    async def create_deal(self, seller: Identity, buyer_handle: str, amount, description: Optional[str] = None) -> Deal:
        """Create a PendingDeposit deal. The seller needs a registered wallet."""
        if seller.platform_id is None:
            raise ValidationError("A platform id is required to create a deal")
        buyer = normalize_handle(buyer_handle)
        if not buyer:
            raise ValidationError("Buyer handle is required")
        if seller.handle and buyer == seller.handle:
            raise ValidationError("You cannot create a deal with yourself")

        buyer_user = self.users.find_by_handle(buyer)
        if buyer_user is not None and buyer_user.platform_id == seller.platform_id:
            raise ValidationError("You cannot create a deal with yourself")

        value = parse_amount(amount)
        seller_user = self.users.get(seller.platform_id)
        if seller_user is None or not seller_user.wallet_address:
            raise ValidationError("Register a wallet before creating a deal")

        for attempt in range(1, self._max_code_attempts + 1):
            deal = Deal(
                code=self._code_generator(),
                seller_platform_id=seller.platform_id,
                seller_handle=seller.handle,
                buyer_handle=buyer,
                amount=value,
                currency=Config.DEAL_CURRENCY,
                description=(description or "").strip() or None,
                status=DealStatus.PENDING_DEPOSIT.value,
            )
            try:
                self.deals.insert(deal)
                break
            except DuplicateDealCodeError:
                logger.warning(f"⚠️ DEAL_CODE_COLLISION: {deal.code} (attempt {attempt})")
        else:
            raise PersistenceError("Could not allocate a unique deal code")

        await self.notifier.notify_buyer(
            deal,
            f"📋 New deal {deal.code} from {seller.display}: {deal.amount} {deal.currency}"
            f"{' - ' + deal.description if deal.description else ''}",
        )
        return deal

    def get_deal(self, code: str) -> Deal:
        return self.deals.require(code)

    def list_deals_for(self, identity: Identity, limit: int = 10) -> List[Deal]:
        return self.deals.list_by_participant(identity.platform_id, identity.handle, limit=limit)

    async def anchor_on_ledger(self, buyer: Identity, code: str) -> Deal:
        """
        Create the deal on the ledger so the buyer can deposit against it.

        Reuses an existing ledger record for the code if one exists. Nothing is
        recorded locally unless the ledger creation confirmed.
        """
        deal = self.deals.require(code)
        self.access.require_buyer(deal, buyer)
        if deal.status_enum is not DealStatus.PENDING_DEPOSIT:
            raise ValidationError(f"Deal {deal.code} is {deal.status}; only pending deals can be funded")
        if deal.ledger_deal_id is not None:
            return deal

        seller_user = self.users.get(deal.seller_platform_id)
        buyer_user = self.users.get(buyer.platform_id) if buyer.platform_id is not None else None
        if seller_user is None or not seller_user.wallet_address:
            raise ValidationError("Seller has no registered wallet")
        if buyer_user is None or not buyer_user.wallet_address:
            raise ValidationError("Register a wallet before funding")

        async with self.state_machine.guarded(deal) as current:
            if current.ledger_deal_id is not None:
                return current

            ledger_id = await self.ledger.resolve_correlation_id(current.code)
            tx_hash = None
            if ledger_id is None:
                handle = await self.ledger.create_on_ledger(
                    current.code, seller_user.wallet_address, buyer_user.wallet_address, current.amount
                )
                tx_hash = await confirm_transaction(handle, f"create {current.code}")
                ledger_id = await self.ledger.resolve_correlation_id(current.code)
                if ledger_id is None:
                    raise LedgerError(f"Ledger creation for {current.code} confirmed but no deal id was returned")
            else:
                logger.info(f"⛓️ LEDGER_DEAL_EXISTS: {current.code} -> {ledger_id}")

            result = self.deals.conditional_update(
                current.code,
                DealStatus.PENDING_DEPOSIT,
                {"ledger_deal_id": ledger_id, "ledger_tx_hash": tx_hash},
                require_null=("ledger_deal_id",),
            )
            if not result.applied:
                raise StaleStateError(current.code, DealStatus.PENDING_DEPOSIT.value, result.current_status)

        logger.info(f"⛓️ DEAL_ANCHORED: {deal.code} ledger_id={ledger_id}")
        return self.deals.require(deal.code)

    async def release(self, buyer: Identity, code: str) -> Deal:
        """Buyer releases funds to the seller: ledger release confirmed, then Funded -> Completed"""
        deal = self.deals.require(code)
        self.access.require_buyer(deal, buyer)
        DealStateValidator.validate(deal, Transitions.RELEASE, ActorKind.BUYER)
        if deal.ledger_deal_id is None:
            raise ValidationError(f"Deal {deal.code} is not on the ledger")

        async with self.state_machine.guarded(deal, Transitions.RELEASE) as current:
            ledger_status = await self.ledger.read_status(current.ledger_deal_id)
            tx_hash = None
            # DISPUTED: the ledger flag outlives a cancelled dispute
            if ledger_status in (LedgerStatus.FUNDED, LedgerStatus.DISPUTED):
                handle = await self.ledger.resolve_release(current.ledger_deal_id)
                tx_hash = await confirm_transaction(handle, f"release {current.code}")
            elif ledger_status is not LedgerStatus.COMPLETED:
                raise LedgerError(f"Ledger reports {ledger_status.name} for {current.code}; cannot release")

            self.state_machine.commit(
                current, Transitions.RELEASE, ActorKind.BUYER,
                {"completed_at": get_naive_utc_now(), "resolution_tx_hash": tx_hash},
            )

        await self.notifier.notify_parties(deal, f"✅ Deal {deal.code} completed. Funds released to the seller.")
        return self.deals.require(deal.code)

    async def cancel(self, seller: Identity, code: str) -> Deal:
        """Seller cancels a deal that has not been funded"""
        deal = self.deals.require(code)
        self.access.require_seller(deal, seller)
        DealStateValidator.validate(deal, Transitions.CANCEL, ActorKind.SELLER)

        async with self.state_machine.guarded(deal, Transitions.CANCEL) as current:
            if current.ledger_deal_id is not None:
                ledger_status = await self.ledger.read_status(current.ledger_deal_id)
                if ledger_status in DEPOSITED_STATES:
                    raise ValidationError(
                        f"Deal {current.code} already has a deposit on the ledger and cannot be cancelled"
                    )
            self.state_machine.commit(
                current, Transitions.CANCEL, ActorKind.SELLER, {"cancelled_at": get_naive_utc_now()}
            )

        await self.notifier.notify_parties(deal, f"❌ Deal {deal.code} was cancelled by the seller.", exclude=seller.platform_id)
        return self.deals.require(deal.code)

    # ------------------------------------------------------------------
    # Reviews and reputation
    # ------------------------------------------------------------------

    async def leave_review(self, reviewer: Identity, code: str, rating: int, comment: Optional[str] = None) -> Deal:
        deal = self.deals.require(code)
        party = self.access.require_party(deal, reviewer)
        if deal.status_enum is not DealStatus.COMPLETED:
            raise ValidationError(f"Deal {deal.code} is {deal.status}; only completed deals can be reviewed")
        if isinstance(rating, bool) or not isinstance(rating, (int, str)):
            raise ValidationError("Rating must be a whole number from 1 to 5")
        try:
            rating = int(rating)
        except ValueError:
            raise ValidationError("Rating must be a whole number from 1 to 5")
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be from 1 to 5")

        prefix = "seller" if party is PartyRole.SELLER else "buyer"
        rating_column = f"{prefix}_rating"
        result = self.deals.conditional_update(
            deal.code,
            DealStatus.COMPLETED,
            {rating_column: rating, f"{prefix}_review": (comment or "").strip() or "No comment"},
            require_null=(rating_column,),
        )
        if not result.applied:
            raise ValidationError(f"You already reviewed deal {deal.code}")

        logger.info(f"⭐ REVIEW_LEFT: {deal.code} by {prefix} rating={rating}")
        counterparty = "buyer" if party is PartyRole.SELLER else "seller"
        message = f"⭐ You received a {rating}/5 review on deal {deal.code}."
        if counterparty == "buyer":
            await self.notifier.notify_buyer(deal, message)
        else:
            await self.notifier.notify_seller(deal, message)
        return self.deals.require(deal.code)

    def reputation(self, subject: Identity) -> ReputationSummary:
        """Completed-deal count, volume, badge and the average rating received"""
        completed = self.deals.list_completed_for(subject.platform_id, subject.handle)
        volume = sum((Decimal(d.amount) for d in completed), Decimal("0"))

        received = []
        for deal in completed:
            is_seller = (
                (subject.platform_id is not None and deal.seller_platform_id == subject.platform_id)
                or (subject.handle and deal.seller_handle == subject.handle)
            )
            # A seller is rated by the buyer and vice versa
            rating = deal.buyer_rating if is_seller else deal.seller_rating
            if rating is not None:
                received.append(rating)

        average = round(sum(received) / len(received), 2) if received else None
        return ReputationSummary(
            handle=subject.handle,
            completed_deals=len(completed),
            volume=volume,
            badge=badge_for(len(completed)),
            average_rating=average,
            ratings_count=len(received),
        )
