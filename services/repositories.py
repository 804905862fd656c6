"""
Supporting repositories: evidence, moderator grants, audit entries and users.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import AdminAuditLog, Deal, DealStatus, Evidence, EvidenceRole, ModeratorGrant, User
from utils.datetime_helpers import get_naive_utc_now
from utils.deal_code import normalize_deal_code
from utils.exceptions import DealNotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class EvidenceRepository:
    """Append-only evidence store"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append_if_disputed(
        self,
        deal_code: str,
        submitted_by_platform_id: Optional[int],
        submitted_by_handle: Optional[str],
        role: EvidenceRole,
        content: str,
        attachment_ref: Optional[str] = None,
        attachment_type: Optional[str] = None,
    ) -> Evidence:
        """
        Insert evidence in the same transaction that confirms the deal is Disputed.

        The deal row is locked (``FOR UPDATE`` where the backend supports it) so a
        concurrent resolve cannot slip between the status check and the insert.
        """
        code = normalize_deal_code(deal_code)
        try:
            with managed_session(self._session_factory) as session:
                status = session.execute(
                    select(Deal.status).where(Deal.code == code).with_for_update()
                ).scalar_one_or_none()
                if status is None:
                    raise DealNotFoundError(code)
                if status != DealStatus.DISPUTED.value:
                    raise ValidationError(f"Evidence can only be submitted while {code} is disputed (status: {status})")

                evidence = Evidence(
                    deal_code=code,
                    submitted_by_platform_id=submitted_by_platform_id,
                    submitted_by_handle=submitted_by_handle,
                    role=role.value,
                    content=content,
                    attachment_ref=attachment_ref,
                    attachment_type=attachment_type,
                )
                session.add(evidence)
                session.flush()
                return evidence
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store evidence for {code}: {e}") from e

    def list_for_deal(self, deal_code: str) -> List[Evidence]:
        code = normalize_deal_code(deal_code)
        try:
            with managed_session(self._session_factory) as session:
                return list(session.execute(
                    select(Evidence).where(Evidence.deal_code == code).order_by(Evidence.created_at, Evidence.id)
                ).scalars())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load evidence for {code}: {e}") from e


class ModeratorRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, platform_id: int) -> Optional[ModeratorGrant]:
        try:
            with managed_session(self._session_factory) as session:
                return session.execute(
                    select(ModeratorGrant).where(ModeratorGrant.platform_id == platform_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load moderator {platform_id}: {e}") from e

    def is_active(self, platform_id: Optional[int]) -> bool:
        if platform_id is None:
            return False
        grant = self.get(platform_id)
        return bool(grant and grant.is_active)

    def grant(self, platform_id: int, handle: Optional[str], granted_by: Optional[int]) -> ModeratorGrant:
        """Upsert by platform id; re-granting reactivates a revoked row"""
        try:
            with managed_session(self._session_factory) as session:
                grant = session.execute(
                    select(ModeratorGrant).where(ModeratorGrant.platform_id == platform_id)
                ).scalar_one_or_none()
                if grant is None:
                    grant = ModeratorGrant(platform_id=platform_id)
                    session.add(grant)
                grant.handle = handle
                grant.is_active = True
                grant.granted_by = granted_by
                grant.granted_at = get_naive_utc_now()
                grant.revoked_by = None
                grant.revoked_at = None
                session.flush()
                return grant
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to grant moderator {platform_id}: {e}") from e

    def revoke(self, platform_id: int, revoked_by: Optional[int]) -> bool:
        """Returns False when there was no active grant to revoke"""
        try:
            with managed_session(self._session_factory) as session:
                grant = session.execute(
                    select(ModeratorGrant).where(
                        ModeratorGrant.platform_id == platform_id,
                        ModeratorGrant.is_active.is_(True),
                    )
                ).scalar_one_or_none()
                if grant is None:
                    return False
                grant.is_active = False
                grant.revoked_by = revoked_by
                grant.revoked_at = get_naive_utc_now()
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to revoke moderator {platform_id}: {e}") from e

    def list_active(self) -> List[ModeratorGrant]:
        try:
            with managed_session(self._session_factory) as session:
                return list(session.execute(
                    select(ModeratorGrant).where(ModeratorGrant.is_active.is_(True)).order_by(ModeratorGrant.granted_at)
                ).scalars())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list moderators: {e}") from e


class AuditLogRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append(self, entry: AdminAuditLog) -> AdminAuditLog:
        try:
            with managed_session(self._session_factory) as session:
                session.add(entry)
                session.flush()
                return entry
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to append audit entry: {e}") from e

    def recent(self, limit: int = 20, deal_code: Optional[str] = None) -> List[AdminAuditLog]:
        stmt = select(AdminAuditLog)
        if deal_code:
            stmt = stmt.where(AdminAuditLog.deal_code == normalize_deal_code(deal_code))
        try:
            with managed_session(self._session_factory) as session:
                return list(session.execute(
                    stmt.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc()).limit(limit)
                ).scalars())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load audit entries: {e}") from e


class UserRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, platform_id: int) -> Optional[User]:
        try:
            with managed_session(self._session_factory) as session:
                return session.execute(
                    select(User).where(User.platform_id == platform_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load user {platform_id}: {e}") from e

    def find_by_handle(self, handle: Optional[str]) -> Optional[User]:
        if not handle:
            return None
        try:
            with managed_session(self._session_factory) as session:
                return session.execute(
                    select(User).where(User.handle == handle).order_by(User.updated_at.desc()).limit(1)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up @{handle}: {e}") from e

    def upsert(self, platform_id: int, handle: Optional[str], wallet_address: Optional[str] = None) -> User:
        try:
            with managed_session(self._session_factory) as session:
                user = session.execute(
                    select(User).where(User.platform_id == platform_id)
                ).scalar_one_or_none()
                if user is None:
                    user = User(platform_id=platform_id)
                    session.add(user)
                if handle:
                    user.handle = handle
                if wallet_address:
                    user.wallet_address = wallet_address
                user.updated_at = get_naive_utc_now()
                session.flush()
                return user
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save user {platform_id}: {e}") from e
