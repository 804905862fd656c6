#!/usr/bin/env python3
"""
Deal State Machine with Conditional Writes
Every status change is validated against the persisted status and written with a
compare-and-swap, so concurrent actors cannot both move the same deal.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set

from models import Deal, DealStatus
from services.deal_repository import DealRepository, UpdateOutcome
from utils.deal_locks import DealLockRegistry
from utils.exceptions import StaleStateError, ValidationError

logger = logging.getLogger(__name__)


class ActorKind(Enum):
    """Who may drive a transition"""
    SELLER = "seller"
    BUYER = "buyer"
    DISPUTER = "disputer"
    ADMIN = "admin"
    RECONCILER = "reconciler"


@dataclass(frozen=True)
class DealTransition:
    name: str
    source: DealStatus
    target: DealStatus
    actors: FrozenSet[ActorKind]
    # Ledger-confirmed transitions: finding the target already applied is success
    idempotent: bool = False

    def __str__(self):
        return f"{self.name} ({self.source.value} -> {self.target.value})"


class Transitions:
    """Declared deal edges"""

    CONFIRM_DEPOSIT = DealTransition(
        "confirm_deposit", DealStatus.PENDING_DEPOSIT, DealStatus.FUNDED,
        frozenset({ActorKind.RECONCILER}), idempotent=True,
    )
    CANCEL = DealTransition(
        "cancel", DealStatus.PENDING_DEPOSIT, DealStatus.CANCELLED,
        frozenset({ActorKind.SELLER}),
    )
    OPEN_DISPUTE = DealTransition(
        "open_dispute", DealStatus.FUNDED, DealStatus.DISPUTED,
        frozenset({ActorKind.SELLER, ActorKind.BUYER}),
    )
    RELEASE = DealTransition(
        "release", DealStatus.FUNDED, DealStatus.COMPLETED,
        frozenset({ActorKind.BUYER}), idempotent=True,
    )
    LEDGER_COMPLETE = DealTransition(
        "ledger_complete", DealStatus.FUNDED, DealStatus.COMPLETED,
        frozenset({ActorKind.RECONCILER}), idempotent=True,
    )
    CANCEL_DISPUTE = DealTransition(
        "cancel_dispute", DealStatus.DISPUTED, DealStatus.FUNDED,
        frozenset({ActorKind.DISPUTER, ActorKind.ADMIN}),
    )
    RESOLVE_RELEASE = DealTransition(
        "resolve_release", DealStatus.DISPUTED, DealStatus.COMPLETED,
        frozenset({ActorKind.ADMIN}),
    )
    RESOLVE_REFUND = DealTransition(
        "resolve_refund", DealStatus.DISPUTED, DealStatus.REFUNDED,
        frozenset({ActorKind.ADMIN}),
    )

    ALL = (
        CONFIRM_DEPOSIT, CANCEL, OPEN_DISPUTE, RELEASE, LEDGER_COMPLETE,
        CANCEL_DISPUTE, RESOLVE_RELEASE, RESOLVE_REFUND,
    )


class DealStateValidator:
    """Validates deal status transitions"""

    VALID_TRANSITIONS: Dict[DealStatus, Set[DealStatus]] = {status: set() for status in DealStatus}
    for _transition in Transitions.ALL:
        VALID_TRANSITIONS[_transition.source].add(_transition.target)
    del _transition

    TERMINAL_STATES = frozenset({DealStatus.COMPLETED, DealStatus.REFUNDED, DealStatus.CANCELLED})

    @classmethod
    def is_valid_transition(cls, current: DealStatus, target: DealStatus) -> bool:
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def get_valid_transitions(cls, current: DealStatus) -> Set[DealStatus]:
        return set(cls.VALID_TRANSITIONS.get(current, set()))

    @classmethod
    def is_terminal_state(cls, status: DealStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def validate(cls, deal: Deal, transition: DealTransition, actor: Optional[ActorKind] = None) -> None:
        """Raise ValidationError unless ``transition`` may run on ``deal`` for ``actor``"""
        current = deal.status_enum
        if current is not transition.source:
            raise ValidationError(
                f"Deal {deal.code} is {current.value}; {transition.name} requires {transition.source.value}"
            )
        if actor is not None and actor not in transition.actors:
            raise ValidationError(f"{actor.value} cannot perform {transition.name} on {deal.code}")


class DealStateMachine:
    """Applies transitions through the repository's conditional update"""

    def __init__(self, deals: DealRepository, locks: Optional[DealLockRegistry] = None):
        self._deals = deals
        self._locks = locks or DealLockRegistry()

    @asynccontextmanager
    async def guarded(self, deal: Deal, transition: Optional[DealTransition] = None):
        """
        Hold the deal's lock and yield a fresh snapshot.

        Raises StaleStateError if the deal's status moved away from the caller's
        snapshot, and ValidationError if ``transition`` is not allowed from the
        fresh status. Ledger calls made inside the block cannot interleave with a
        competing status change from this process.
        """
        async with self._locks.lock_for(deal.code):
            current = self._deals.require(deal.code)
            if current.status != deal.status:
                raise StaleStateError(deal.code, deal.status, current.status)
            if transition is not None:
                DealStateValidator.validate(current, transition)
            yield current

    def commit(
        self,
        deal: Deal,
        transition: DealTransition,
        actor: ActorKind,
        patch: Optional[Dict[str, Any]] = None,
        require_null: Iterable[str] = (),
    ) -> bool:
        """
        Persist ``transition`` conditionally on the deal still being in its source state.

        Returns True when applied and False when an idempotent transition was found
        already applied. Raises StaleStateError otherwise.
        """
        if actor not in transition.actors:
            raise ValidationError(f"{actor.value} cannot perform {transition.name} on {deal.code}")

        values = dict(patch or {})
        values["status"] = transition.target
        result = self._deals.conditional_update(deal.code, transition.source, values, require_null=require_null)

        if result.outcome is UpdateOutcome.APPLIED:
            logger.info(f"🔄 DEAL_TRANSITION: {deal.code} {transition} by {actor.value}")
            return True
        if result.outcome is UpdateOutcome.ALREADY_APPLIED and transition.idempotent:
            logger.info(f"♻️ DEAL_TRANSITION_ALREADY_APPLIED: {deal.code} {transition}")
            return False

        logger.warning(
            f"⚠️ DEAL_TRANSITION_STALE: {deal.code} {transition} found {result.current_status}"
        )
        raise StaleStateError(deal.code, transition.source.value, result.current_status)


__all__ = [
    "ActorKind",
    "DealTransition",
    "Transitions",
    "DealStateValidator",
    "DealStateMachine",
]
