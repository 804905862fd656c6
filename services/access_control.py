"""
Access Control / Role Resolver
==============================

Roles are ordered Botmaster > Moderator > Party > Anonymous. Platform ids are the
authoritative identity; handles are mutable and only used as a fallback, and every
decision taken on a handle alone is logged as a weak match.
"""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Iterable, Optional

from models import Deal, EvidenceRole
from services.deal_repository import DealRepository
from services.repositories import ModeratorRepository
from utils.exceptions import AuthorizationError

logger = logging.getLogger(__name__)


def normalize_handle(handle: Optional[str]) -> Optional[str]:
    """Canonical handle key: trimmed, no leading '@', lower-case"""
    if handle is None:
        return None
    canonical = handle.strip().lstrip("@").strip().lower()
    return canonical or None


@dataclass(frozen=True)
class Identity:
    """Who is acting. Construct through ``Identity.of`` so the handle is canonical."""
    platform_id: Optional[int]
    handle: Optional[str] = None

    @classmethod
    def of(cls, platform_id: Optional[int], handle: Optional[str] = None) -> "Identity":
        return cls(platform_id=platform_id, handle=normalize_handle(handle))

    @property
    def display(self) -> str:
        if self.handle:
            return f"@{self.handle}"
        return str(self.platform_id)


class Role(IntEnum):
    ANONYMOUS = 0
    PARTY = 1
    MODERATOR = 2
    BOTMASTER = 3


class MatchStrength(Enum):
    STRONG = "strong"
    WEAK = "weak"
    NONE = "none"


class PartyRole(Enum):
    SELLER = "seller"
    BUYER = "buyer"

    @property
    def evidence_role(self) -> EvidenceRole:
        return EvidenceRole.SELLER if self is PartyRole.SELLER else EvidenceRole.BUYER


def _match(stored_id: Optional[int], stored_handle: Optional[str], identity: Identity) -> MatchStrength:
    # Once a platform id is bound, only that id matches
    if stored_id is not None:
        return MatchStrength.STRONG if stored_id == identity.platform_id else MatchStrength.NONE
    if stored_handle and identity.handle and stored_handle == identity.handle:
        return MatchStrength.WEAK
    return MatchStrength.NONE


class AccessControl:
    """Resolves roles and enforces per-operation authorization"""

    def __init__(
        self,
        moderators: ModeratorRepository,
        deals: Optional[DealRepository] = None,
        botmaster_ids: Iterable[int] = (),
        botmaster_handles: Iterable[str] = (),
    ):
        self._moderators = moderators
        self._deals = deals
        self._botmaster_ids = frozenset(botmaster_ids)
        self._botmaster_handles = frozenset(filter(None, (normalize_handle(h) for h in botmaster_handles)))

    @property
    def botmaster_ids(self) -> frozenset:
        return self._botmaster_ids

    # ------------------------------------------------------------------
    # Role resolution
    # ------------------------------------------------------------------

    def is_botmaster(self, identity: Identity) -> bool:
        if identity.platform_id is not None and identity.platform_id in self._botmaster_ids:
            return True
        if identity.handle and identity.handle in self._botmaster_handles:
            logger.warning(
                f"⚠️ WEAK_IDENTITY_MATCH: botmaster granted by handle @{identity.handle} "
                f"(platform_id={identity.platform_id})"
            )
            return True
        return False

    def is_moderator(self, identity: Identity) -> bool:
        return self._moderators.is_active(identity.platform_id)

    def is_admin(self, identity: Identity) -> bool:
        return self.is_botmaster(identity) or self.is_moderator(identity)

    def role_for(self, identity: Identity, deal: Optional[Deal] = None) -> Role:
        if self.is_botmaster(identity):
            return Role.BOTMASTER
        if self.is_moderator(identity):
            return Role.MODERATOR
        if deal is not None and self.party_role(deal, identity) is not None:
            return Role.PARTY
        return Role.ANONYMOUS

    def match_seller(self, deal: Deal, identity: Identity) -> MatchStrength:
        return _match(deal.seller_platform_id, deal.seller_handle, identity)

    def match_buyer(self, deal: Deal, identity: Identity) -> MatchStrength:
        return _match(deal.buyer_platform_id, deal.buyer_handle, identity)

    def party_role(self, deal: Deal, identity: Identity) -> Optional[PartyRole]:
        """Which side of the deal the identity is on, binding the buyer id on a weak match"""
        seller = self.match_seller(deal, identity)
        if seller is not MatchStrength.NONE:
            if seller is MatchStrength.WEAK:
                logger.warning(f"⚠️ WEAK_IDENTITY_MATCH: seller of {deal.code} matched by handle @{identity.handle}")
            return PartyRole.SELLER

        buyer = self.match_buyer(deal, identity)
        if buyer is MatchStrength.NONE:
            return None
        if buyer is MatchStrength.WEAK:
            logger.warning(f"⚠️ WEAK_IDENTITY_MATCH: buyer of {deal.code} matched by handle @{identity.handle}")
            self._bind_buyer(deal, identity)
        return PartyRole.BUYER

    def _bind_buyer(self, deal: Deal, identity: Identity) -> None:
        if self._deals is None or identity.platform_id is None or deal.buyer_platform_id is not None:
            return
        result = self._deals.conditional_update(
            deal.code,
            deal.status_enum,
            {"buyer_platform_id": identity.platform_id},
            require_null=("buyer_platform_id",),
        )
        if result.applied:
            deal.buyer_platform_id = identity.platform_id
            logger.info(f"🔗 BUYER_BOUND: {deal.code} buyer @{identity.handle} -> {identity.platform_id}")

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def require_botmaster(self, identity: Identity) -> None:
        if not self.is_botmaster(identity):
            raise AuthorizationError("Only botmasters can do this")

    def require_admin(self, identity: Identity) -> Role:
        if self.is_botmaster(identity):
            return Role.BOTMASTER
        if self.is_moderator(identity):
            return Role.MODERATOR
        raise AuthorizationError("Only admins can do this")

    def require_party(self, deal: Deal, identity: Identity) -> PartyRole:
        party = self.party_role(deal, identity)
        if party is None:
            raise AuthorizationError(f"You are not a party to deal {deal.code}")
        return party

    def require_seller(self, deal: Deal, identity: Identity) -> None:
        if self.party_role(deal, identity) is not PartyRole.SELLER:
            raise AuthorizationError(f"Only the seller of {deal.code} can do this")

    def require_buyer(self, deal: Deal, identity: Identity) -> None:
        if self.party_role(deal, identity) is not PartyRole.BUYER:
            raise AuthorizationError(f"Only the buyer of {deal.code} can do this")

    def require_party_or_admin(self, deal: Deal, identity: Identity) -> EvidenceRole:
        party = self.party_role(deal, identity)
        if party is not None:
            return party.evidence_role
        if self.is_admin(identity):
            return EvidenceRole.ADMIN
        raise AuthorizationError(f"You are not a party to deal {deal.code}")

    def is_disputer(self, deal: Deal, identity: Identity) -> bool:
        match = _match(deal.disputed_by_platform_id, deal.disputed_by_handle, identity)
        if match is MatchStrength.WEAK:
            logger.warning(f"⚠️ WEAK_IDENTITY_MATCH: disputer of {deal.code} matched by handle @{identity.handle}")
        return match is not MatchStrength.NONE

    def can_manage_dispute(self, deal: Deal, identity: Identity) -> bool:
        """Botmasters always; moderators only while assigned to this deal and still active"""
        if self.is_botmaster(identity):
            return True
        return (
            identity.platform_id is not None
            and deal.assigned_moderator_id == identity.platform_id
            and self.is_moderator(identity)
        )

    def require_dispute_manager(self, deal: Deal, identity: Identity) -> None:
        if not self.can_manage_dispute(deal, identity):
            if self.is_moderator(identity):
                raise AuthorizationError(f"Dispute {deal.code} is not assigned to you")
            raise AuthorizationError("Only admins can do this")
