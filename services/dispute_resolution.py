"""
Dispute Resolution Service
Opening disputes, evidence, moderator assignment and admin resolution.

Resolution is irreversible on the ledger, so the ledger call must confirm before the
local terminal status is committed. A failed or timed-out ledger call leaves the
deal Disputed and surfaces the error for retry.
"""

import logging
from typing import List, NamedTuple, Optional, Union

from config import Config
from caching.bounded_cache import ActionCooldown
from models import AdminAction, Deal, DealStatus, Evidence, Resolution
from services.access_control import AccessControl, Identity, PartyRole
from services.audit_logger import AuditLogger
from services.deal_repository import DealRepository
from services.ledger_client import LedgerClient, LedgerStatus, confirm_transaction
from services.notification_service import NotificationDispatcher
from services.repositories import EvidenceRepository, UserRepository
from utils.datetime_helpers import get_naive_utc_now
from utils.deal_state_machine import ActorKind, DealStateMachine, DealStateValidator, Transitions
from utils.exceptions import (
    AuthorizationError,
    EscrowError,
    LedgerError,
    StaleStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_DISPUTE_REASON = "No reason provided"


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution"""

    deal_code: str
    resolution: Resolution
    status: DealStatus
    tx_hash: Optional[str]
    resolved_by: Optional[int]
    audit_recorded: bool


class DisputeResolutionService:
    """Dispute workflow for parties, moderators and botmasters"""

    def __init__(
        self,
        deals: DealRepository,
        evidence: EvidenceRepository,
        users: UserRepository,
        access: AccessControl,
        state_machine: DealStateMachine,
        ledger: LedgerClient,
        notifier: NotificationDispatcher,
        audit: AuditLogger,
        message_cooldown: Optional[ActionCooldown] = None,
    ):
        self.deals = deals
        self.evidence = evidence
        self.users = users
        self.access = access
        self.state_machine = state_machine
        self.ledger = ledger
        self.notifier = notifier
        self.audit = audit
        self.message_cooldown = message_cooldown or ActionCooldown(
            Config.ADMIN_MESSAGE_COOLDOWN_SECONDS, max_entries=Config.COOLDOWN_CACHE_MAX_ENTRIES
        )

    # ------------------------------------------------------------------
    # Party actions
    # ------------------------------------------------------------------

    async def open_dispute(self, actor: Identity, code: str, reason: Optional[str] = None) -> Deal:
        """
        Funded -> Disputed by either party.

        The ledger dispute flag is best effort: the local record is authoritative
        for the Disputed state, so a ledger failure is logged and the dispute still
        opens.
        """
        deal = self.deals.require(code)
        party = self.access.require_party(deal, actor)
        DealStateValidator.validate(deal, Transitions.OPEN_DISPUTE)
        reason = (reason or "").strip() or DEFAULT_DISPUTE_REASON
        actor_kind = ActorKind.SELLER if party is PartyRole.SELLER else ActorKind.BUYER

        async with self.state_machine.guarded(deal, Transitions.OPEN_DISPUTE) as current:
            marked = await self._mark_disputed_on_ledger(current)
            self.state_machine.commit(current, Transitions.OPEN_DISPUTE, actor_kind, {
                "disputed_by_platform_id": actor.platform_id,
                "disputed_by_handle": actor.handle,
                "dispute_reason": reason,
                "disputed_at": get_naive_utc_now(),
                "ledger_dispute_marked": marked,
            })

        logger.info(f"⚠️ DISPUTE_OPENED: {deal.code} by {actor.display} ({party.value}): {reason}")
        other = f"⚠️ Dispute opened on {deal.code}.\nReason: {reason}\n\nSubmit your evidence while the admin team reviews it."
        if party is PartyRole.SELLER:
            await self.notifier.notify_buyer(deal, other)
        else:
            await self.notifier.notify_seller(deal, other)
        await self.notifier.notify_botmasters(
            f"🔔 NEW DISPUTE: {deal.code}\nAmount: {deal.amount} {deal.currency}\n"
            f"Seller: @{deal.seller_handle}\nBuyer: @{deal.buyer_handle}\nBy: {actor.display}\nReason: {reason}",
            exclude=actor.platform_id,
        )
        return self.deals.require(deal.code)

    async def _mark_disputed_on_ledger(self, deal: Deal) -> bool:
        if deal.ledger_deal_id is None:
            return False
        try:
            handle = await self.ledger.mark_disputed(deal.ledger_deal_id)
            await confirm_transaction(handle, f"dispute {deal.code}")
            return True
        except LedgerError as e:
            logger.warning(f"⚠️ LEDGER_DISPUTE_FLAG_FAILED: {deal.code}: {e}")
            return False

    async def submit_evidence(
        self,
        actor: Identity,
        code: str,
        content: Optional[str],
        attachment_ref: Optional[str] = None,
        attachment_type: Optional[str] = None,
    ) -> Evidence:
        """Append evidence to a disputed deal. Never changes the deal itself."""
        deal = self.deals.require(code)
        role = self.access.require_party_or_admin(deal, actor)
        content = (content or "").strip()
        if not content:
            if not attachment_ref:
                raise ValidationError("Evidence text is required")
            content = "Photo evidence" if attachment_type == "photo" else "Attachment"

        # Status is re-checked inside the insert transaction
        evidence = self.evidence.append_if_disputed(
            deal.code, actor.platform_id, actor.handle, role, content, attachment_ref, attachment_type
        )
        logger.info(f"📋 EVIDENCE_SUBMITTED: {deal.code} by {actor.display} ({role.value})")

        message = f"📋 Evidence: {deal.code}\nFrom: {actor.display} ({role.value})\n\"{content}\""
        if deal.assigned_moderator_id is not None:
            await self.notifier.send(deal.assigned_moderator_id, message, attachment_ref, attachment_type)
        else:
            await self.notifier.notify_botmasters(
                message, exclude=actor.platform_id, attachment_ref=attachment_ref, attachment_type=attachment_type
            )
        return evidence

    def list_evidence(self, actor: Identity, code: str) -> List[Evidence]:
        deal = self.deals.require(code)
        self.access.require_party_or_admin(deal, actor)
        return self.evidence.list_for_deal(deal.code)

    async def cancel_dispute(self, actor: Identity, code: str) -> Deal:
        """Disputed -> Funded by the original disputer or any admin"""
        deal = self.deals.require(code)
        is_disputer = self.access.is_disputer(deal, actor)
        is_admin = self.access.is_admin(actor)
        if not is_disputer and not is_admin:
            raise AuthorizationError("Only the person who opened the dispute or an admin can cancel it")
        if deal.status_enum is not DealStatus.DISPUTED:
            raise ValidationError(f"Deal {deal.code} is not disputed (status: {deal.status})")

        actor_kind = ActorKind.DISPUTER if is_disputer else ActorKind.ADMIN
        async with self.state_machine.guarded(deal, Transitions.CANCEL_DISPUTE) as current:
            self.state_machine.commit(current, Transitions.CANCEL_DISPUTE, actor_kind)

        if actor_kind is ActorKind.ADMIN:
            await self.audit.log_admin_action(
                AdminAction.CANCEL_DISPUTE, actor, deal_code=deal.code, details={"note": "Dispute cancelled"}
            )
        await self.notifier.notify_parties(
            deal, f"✅ Dispute on {deal.code} has been cancelled. The deal is back to funded."
        )
        return self.deals.require(deal.code)

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    def _resolve_moderator(self, target: Union[Identity, str]) -> Identity:
        if isinstance(target, str):
            target = Identity.of(None, target)
        if target.platform_id is None:
            user = self.users.find_by_handle(target.handle)
            if user is None:
                raise ValidationError(f"@{target.handle} is not a registered user")
            target = Identity(platform_id=user.platform_id, handle=user.handle or target.handle)
        if not (self.access.is_moderator(target) or self.access.is_botmaster(target)):
            raise ValidationError(f"{target.display} is not a moderator")
        return target

    async def assign(self, actor: Identity, code: str, moderator: Union[Identity, str]) -> Deal:
        """Botmaster assigns a disputed deal to a moderator, replacing any prior assignment"""
        self.access.require_botmaster(actor)
        deal = self.deals.require(code)
        if deal.status_enum is not DealStatus.DISPUTED:
            raise ValidationError(f"Deal {deal.code} is not disputed (status: {deal.status})")
        target = self._resolve_moderator(moderator)

        async with self.state_machine.guarded(deal) as current:
            previous = current.assigned_moderator_handle
            result = self.deals.conditional_update(current.code, DealStatus.DISPUTED, {
                "assigned_moderator_id": target.platform_id,
                "assigned_moderator_handle": target.handle,
                "assigned_at": get_naive_utc_now(),
                "assigned_by": actor.platform_id,
            })
            if not result.applied:
                raise StaleStateError(current.code, DealStatus.DISPUTED.value, result.current_status)

        logger.info(f"🛡️ DISPUTE_ASSIGNED: {deal.code} -> {target.display} (previous: {previous or 'none'})")
        await self.audit.log_admin_action(
            AdminAction.ASSIGN, actor, deal_code=deal.code, target=target.display,
            details={"previous": previous},
        )
        await self.notifier.send(
            target.platform_id,
            f"🛡️ Dispute assigned to you: {deal.code}\nAmount: {deal.amount} {deal.currency}\n"
            f"Seller: @{deal.seller_handle}\nBuyer: @{deal.buyer_handle}\nReason: {deal.dispute_reason or 'N/A'}",
        )
        await self.notifier.notify_parties(
            deal, f"📋 {deal.code}: your dispute is now being reviewed by the admin team."
        )
        return self.deals.require(deal.code)

    async def unassign(self, actor: Identity, code: str) -> Deal:
        self.access.require_botmaster(actor)
        deal = self.deals.require(code)
        if deal.assigned_moderator_id is None:
            raise ValidationError(f"Deal {deal.code} has no assigned moderator")

        async with self.state_machine.guarded(deal) as current:
            previous = current.assigned_moderator_handle
            result = self.deals.conditional_update(current.code, current.status_enum, {
                "assigned_moderator_id": None,
                "assigned_moderator_handle": None,
                "assigned_at": None,
                "assigned_by": None,
            })
            if not result.applied:
                raise StaleStateError(current.code, current.status, result.current_status)

        logger.info(f"🛡️ DISPUTE_UNASSIGNED: {deal.code} (was {previous})")
        await self.audit.log_admin_action(AdminAction.UNASSIGN, actor, deal_code=deal.code, target=previous)
        return self.deals.require(deal.code)

    async def resolve(self, actor: Identity, code: str, decision: Union[Resolution, str]) -> ResolutionResult:
        """Close a dispute with a release to the seller or a refund to the buyer"""
        try:
            decision = Resolution(decision.lower() if isinstance(decision, str) else decision)
        except ValueError:
            raise ValidationError("Decision must be 'release' or 'refund'")

        deal = self.deals.require(code)
        self.access.require_dispute_manager(deal, actor)
        if decision is Resolution.RELEASE:
            transition, target, opposite = Transitions.RESOLVE_RELEASE, LedgerStatus.COMPLETED, LedgerStatus.REFUNDED
        else:
            transition, target, opposite = Transitions.RESOLVE_REFUND, LedgerStatus.REFUNDED, LedgerStatus.COMPLETED
        DealStateValidator.validate(deal, transition, ActorKind.ADMIN)
        if deal.ledger_deal_id is None:
            raise LedgerError(f"Deal {deal.code} has no ledger record to resolve")

        async with self.state_machine.guarded(deal, transition) as current:
            # Assignment may have changed while waiting for the lock
            self.access.require_dispute_manager(current, actor)

            ledger_status = await self.ledger.read_status(current.ledger_deal_id)
            tx_hash = None
            if ledger_status is target:
                logger.info(f"♻️ LEDGER_ALREADY_RESOLVED: {current.code} shows {ledger_status.name}")
            elif ledger_status in (opposite, LedgerStatus.CANCELLED, LedgerStatus.PENDING):
                raise LedgerError(
                    f"Ledger reports {ledger_status.name} for {current.code}; cannot {decision.value}"
                )
            else:
                try:
                    if decision is Resolution.RELEASE:
                        handle = await self.ledger.resolve_release(current.ledger_deal_id)
                    else:
                        handle = await self.ledger.resolve_refund(current.ledger_deal_id)
                    tx_hash = await confirm_transaction(handle, f"{decision.value} {current.code}")
                except LedgerError as e:
                    logger.error(f"❌ RESOLVE_LEDGER_FAILED: {current.code} {decision.value}: {e}")
                    raise

            now = get_naive_utc_now()
            patch = {
                "resolved_by": actor.platform_id,
                "resolved_at": now,
                "resolution": decision,
                "resolution_tx_hash": tx_hash,
            }
            if decision is Resolution.RELEASE:
                patch["completed_at"] = now
            self.state_machine.commit(current, transition, ActorKind.ADMIN, patch)

        audit_action = AdminAction.RESOLVE_RELEASE if decision is Resolution.RELEASE else AdminAction.RESOLVE_REFUND
        recorded = await self.audit.log_admin_action(
            audit_action, actor, deal_code=deal.code, details={"tx_hash": tx_hash}
        )

        released = decision is Resolution.RELEASE
        await self.notifier.notify_seller(
            deal, f"⚖️ {deal.code} resolved: " + ("funds released to you." if released else "funds refunded to the buyer.")
        )
        await self.notifier.notify_buyer(
            deal, f"⚖️ {deal.code} resolved: " + ("funds released to the seller." if released else "funds refunded to you.")
        )
        return ResolutionResult(
            deal_code=deal.code,
            resolution=decision,
            status=transition.target,
            tx_hash=tx_hash,
            resolved_by=actor.platform_id,
            audit_recorded=recorded,
        )

    async def message_party(self, actor: Identity, code: str, party: Union[PartyRole, str], message: str) -> bool:
        """Send an admin message to one side of the deal"""
        try:
            party = PartyRole(party.lower() if isinstance(party, str) else party)
        except ValueError:
            raise ValidationError("Target must be 'seller' or 'buyer'")
        deal, message = self._check_admin_message(actor, code, message)

        text = f"📨 Message from the admin team\nRe: {deal.code}\n\n{message}\n\nReply with evidence on {deal.code}."
        if party is PartyRole.SELLER:
            delivered = await self.notifier.notify_seller(deal, text)
        else:
            delivered = await self.notifier.notify_buyer(deal, text)
        if not delivered:
            self.message_cooldown.reset((actor.platform_id, deal.code))
            raise EscrowError(f"Could not deliver the message to the {party.value}")

        await self.audit.log_admin_action(
            AdminAction.MESSAGE_PARTY, actor, deal_code=deal.code, target=party.value, details={"message": message}
        )
        return delivered

    async def broadcast(self, actor: Identity, code: str, message: str) -> int:
        deal, message = self._check_admin_message(actor, code, message)
        delivered = await self.notifier.notify_parties(
            deal, f"📢 Admin announcement\nRe: {deal.code}\n\n{message}"
        )
        await self.audit.log_admin_action(
            AdminAction.BROADCAST, actor, deal_code=deal.code, target="both",
            details={"message": message, "delivered": delivered},
        )
        return delivered

    def _check_admin_message(self, actor: Identity, code: str, message: str):
        deal = self.deals.require(code)
        self.access.require_dispute_manager(deal, actor)
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message text is required")
        if not self.message_cooldown.try_acquire((actor.platform_id, deal.code)):
            wait = self.message_cooldown.remaining((actor.platform_id, deal.code))
            raise ValidationError(f"Please wait {wait:.0f}s before messaging this deal again")
        return deal, message

    def list_disputes(self, actor: Identity, mine: bool = False) -> List[Deal]:
        """Open disputes; moderators only ever see the ones assigned to them"""
        if self.access.is_botmaster(actor) and not mine:
            return self.deals.list_disputed()
        self.access.require_admin(actor)
        if actor.platform_id is None:
            return []
        return self.deals.list_disputed(assigned_to=actor.platform_id)
