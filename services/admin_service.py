"""
Admin Service - moderator administration and audit trail viewing (botmaster only)
"""

import logging
from typing import List, Optional

from models import AdminAction, AdminAuditLog, ModeratorGrant
from services.access_control import AccessControl, Identity, normalize_handle
from services.audit_logger import AuditLogger
from services.notification_service import NotificationDispatcher
from services.repositories import ModeratorRepository, UserRepository
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


class AdminService:
    """Botmaster operations on moderator grants and the audit log"""

    def __init__(
        self,
        moderators: ModeratorRepository,
        users: UserRepository,
        access: AccessControl,
        audit: AuditLogger,
        notifier: NotificationDispatcher,
        audit_log_limit: int = 20,
    ):
        self.moderators = moderators
        self.users = users
        self.access = access
        self.audit = audit
        self.notifier = notifier
        self.audit_log_limit = audit_log_limit

    def _registered(self, handle: str):
        canonical = normalize_handle(handle)
        user = self.users.find_by_handle(canonical)
        if user is None:
            raise ValidationError(f"@{canonical} not found. They must register a wallet first.")
        return user

    async def add_moderator(self, actor: Identity, handle: str) -> ModeratorGrant:
        self.access.require_botmaster(actor)
        user = self._registered(handle)
        grant = self.moderators.grant(user.platform_id, user.handle, granted_by=actor.platform_id)

        await self.audit.log_admin_action(AdminAction.ADD_MODERATOR, actor, target=f"@{user.handle}")
        await self.notifier.send(user.platform_id, "🛡️ You are now a moderator.")
        return grant

    async def remove_moderator(self, actor: Identity, handle: str) -> None:
        self.access.require_botmaster(actor)
        user = self._registered(handle)
        if not self.moderators.revoke(user.platform_id, revoked_by=actor.platform_id):
            raise ValidationError(f"@{user.handle} is not an active moderator")

        await self.audit.log_admin_action(AdminAction.REMOVE_MODERATOR, actor, target=f"@{user.handle}")

    def list_moderators(self, actor: Identity) -> List[ModeratorGrant]:
        self.access.require_botmaster(actor)
        return self.moderators.list_active()

    def recent_audit_entries(self, actor: Identity, deal_code: Optional[str] = None) -> List[AdminAuditLog]:
        self.access.require_botmaster(actor)
        return self.audit.recent(limit=self.audit_log_limit, deal_code=deal_code)
