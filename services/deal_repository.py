"""
Deal Repository
===============

Durable storage for deals. Every status change goes through ``conditional_update``,
a compare-and-swap on the current status, so two writers racing on the same deal can
never both succeed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import Deal, DealStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.deal_code import normalize_deal_code
from utils.exceptions import (
    DealNotFoundError,
    DuplicateDealCodeError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset({"id", "code", "amount", "created_at"})


class UpdateOutcome(Enum):
    """Result of a conditional status write"""
    APPLIED = "applied"
    STALE = "stale"
    ALREADY_APPLIED = "already_applied"


@dataclass
class ConditionalUpdateResult:
    outcome: UpdateOutcome
    current_status: Optional[str]

    @property
    def applied(self) -> bool:
        return self.outcome is UpdateOutcome.APPLIED


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class DealRepository:
    """Deal persistence backed by SQLAlchemy sessions"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, code: str) -> Optional[Deal]:
        """Case-insensitive lookup; returns a detached snapshot or None"""
        normalized = normalize_deal_code(code)
        try:
            with managed_session(self._session_factory) as session:
                return session.execute(
                    select(Deal).where(Deal.code == normalized)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load deal {normalized}: {e}") from e

    def require(self, code: str) -> Deal:
        deal = self.get(code)
        if deal is None:
            raise DealNotFoundError(normalize_deal_code(code))
        return deal

    def insert(self, deal: Deal) -> Deal:
        try:
            with managed_session(self._session_factory) as session:
                session.add(deal)
                session.flush()
            logger.info(f"📝 DEAL_CREATED: {deal.code} amount={deal.amount} {deal.currency}")
            return deal
        except IntegrityError as e:
            raise DuplicateDealCodeError(f"Deal code {deal.code} already exists") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to insert deal {deal.code}: {e}") from e

    def conditional_update(
        self,
        code: str,
        expected_status: DealStatus,
        patch: Dict[str, Any],
        require_null: Iterable[str] = (),
    ) -> ConditionalUpdateResult:
        """
        Apply ``patch`` only if the deal is still in ``expected_status`` and every
        column named in ``require_null`` is still NULL.

        Returns APPLIED when the row was written, ALREADY_APPLIED when the patch
        carries a status the deal already has, STALE otherwise.
        """
        touched = IMMUTABLE_FIELDS.intersection(patch)
        if touched:
            raise ValidationError(f"Immutable deal fields cannot be updated: {sorted(touched)}")

        normalized = normalize_deal_code(code)
        values = {key: _column_value(value) for key, value in patch.items()}
        values["updated_at"] = get_naive_utc_now()

        stmt = update(Deal).where(
            Deal.code == normalized,
            Deal.status == expected_status.value,
        )
        for column in require_null:
            stmt = stmt.where(getattr(Deal, column).is_(None))

        try:
            with managed_session(self._session_factory) as session:
                result = session.execute(stmt.values(**values))
                if result.rowcount == 1:
                    return ConditionalUpdateResult(UpdateOutcome.APPLIED, values.get("status", expected_status.value))

                current = session.execute(
                    select(Deal.status).where(Deal.code == normalized)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Conditional update failed for {normalized}: {e}") from e

        if current is None:
            raise DealNotFoundError(normalized)

        target = values.get("status")
        if target is not None and current == target:
            return ConditionalUpdateResult(UpdateOutcome.ALREADY_APPLIED, current)
        return ConditionalUpdateResult(UpdateOutcome.STALE, current)

    def list_by_participant(self, platform_id: Optional[int], handle: Optional[str], limit: int = 10) -> List[Deal]:
        clauses = _participant_clauses(platform_id, handle)
        if not clauses:
            return []
        return self._list(
            select(Deal).where(or_(*clauses)).order_by(Deal.created_at.desc(), Deal.id.desc()).limit(limit),
            "deals by participant",
        )

    def list_by_status(self, status: DealStatus, require_ledger_id: bool = False) -> List[Deal]:
        stmt = select(Deal).where(Deal.status == status.value)
        if require_ledger_id:
            stmt = stmt.where(Deal.ledger_deal_id.is_not(None))
        return self._list(stmt.order_by(Deal.id), f"{status.value} deals")

    def list_due_funded_reminders(self, funded_before: datetime) -> List[Deal]:
        return self._list(
            select(Deal).where(
                Deal.status == DealStatus.FUNDED.value,
                Deal.funded_at.is_not(None),
                Deal.funded_at <= funded_before,
                Deal.funded_reminder_sent_at.is_(None),
            ).order_by(Deal.funded_at),
            "deals due a funded reminder",
        )

    def list_disputed(self, assigned_to: Optional[int] = None) -> List[Deal]:
        stmt = select(Deal).where(Deal.status == DealStatus.DISPUTED.value)
        if assigned_to is not None:
            stmt = stmt.where(Deal.assigned_moderator_id == assigned_to)
        return self._list(stmt.order_by(Deal.disputed_at.desc()), "disputed deals")

    def list_completed_for(self, platform_id: Optional[int], handle: Optional[str]) -> List[Deal]:
        clauses = _participant_clauses(platform_id, handle)
        if not clauses:
            return []
        return self._list(
            select(Deal).where(Deal.status == DealStatus.COMPLETED.value, or_(*clauses)),
            "completed deals",
        )

    def _list(self, stmt, what: str) -> List[Deal]:
        try:
            with managed_session(self._session_factory) as session:
                return list(session.execute(stmt).scalars())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list {what}: {e}") from e


def _participant_clauses(platform_id: Optional[int], handle: Optional[str]) -> list:
    clauses = []
    if platform_id is not None:
        clauses += [Deal.seller_platform_id == platform_id, Deal.buyer_platform_id == platform_id]
    if handle:
        clauses += [Deal.seller_handle == handle, Deal.buyer_handle == handle]
    return clauses
