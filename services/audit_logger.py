"""
Admin Audit Logging
"""

import json
import logging
from typing import Any, Dict, List, Optional

from models import AdminAction, AdminAuditLog
from services.access_control import Identity
from services.repositories import AuditLogRepository
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import AuditWriteError

logger = logging.getLogger(__name__)


def _configure_audit_file(audit_log: logging.Logger, path: str) -> None:
    for handler in audit_log.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename.endswith(path):
            return
    audit_handler = logging.FileHandler(path)
    audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
    audit_log.addHandler(audit_handler)


class AuditLogger:
    """Records admin-class actions; a failed write is logged and never blocks the action"""

    def __init__(self, repository: AuditLogRepository, log_file: Optional[str] = None):
        self._repository = repository
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)
        if log_file:
            _configure_audit_file(self.audit_logger, log_file)

    def _persist(self, entry: AdminAuditLog) -> None:
        try:
            self._repository.append(entry)
        except Exception as e:
            raise AuditWriteError(f"Audit entry {entry.action} for {entry.deal_code or '-'} not recorded: {e}") from e

    async def log_admin_action(
        self,
        action: AdminAction,
        actor: Identity,
        deal_code: Optional[str] = None,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Append one audit entry. Returns False if it could not be stored."""
        payload = {
            'timestamp': get_naive_utc_now().isoformat(),
            'action': action.value,
            'deal_code': deal_code,
            'actor_id': actor.platform_id,
            'actor_handle': actor.handle,
            'target': target,
            'details': details or {},
        }
        self.audit_logger.info(json.dumps(payload, default=str))

        entry = AdminAuditLog(
            action=action.value,
            deal_code=deal_code,
            actor_platform_id=actor.platform_id,
            actor_handle=actor.handle,
            target=target,
            details=json.dumps(details, default=str) if details else None,
        )
        try:
            self._persist(entry)
        except AuditWriteError as e:
            logger.error(f"❌ AUDIT_WRITE_FAILED: {e}", exc_info=True)
            return False

        logger.info(f"🛡️ ADMIN ACTION: {actor.display} performed '{action.value}' on {deal_code or target or '-'}")
        return True

    def recent(self, limit: int = 20, deal_code: Optional[str] = None) -> List[AdminAuditLog]:
        return self._repository.recent(limit=limit, deal_code=deal_code)
