#!/usr/bin/env python3
"""
Escrow Core Startup

Deterministic startup sequence:
1. Load environment (.env) and configure logging
2. Connect to the database and create missing tables
3. Wire repositories, services, ledger client and notification sink
4. Start the reconciliation scheduler and run until interrupted
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Iterable, Optional

from dotenv import load_dotenv
from sqlalchemy.orm import sessionmaker

load_dotenv()

from config import Config  # noqa: E402
from caching.bounded_cache import ActionCooldown  # noqa: E402
from jobs.ledger_reconciler import LedgerReconciler  # noqa: E402
from jobs.scheduler import EscrowScheduler  # noqa: E402
from services.access_control import AccessControl  # noqa: E402
from services.admin_service import AdminService  # noqa: E402
from services.audit_logger import AuditLogger  # noqa: E402
from services.deal_repository import DealRepository  # noqa: E402
from services.deal_service import DealService  # noqa: E402
from services.dispute_resolution import DisputeResolutionService  # noqa: E402
from services.ledger_client import LedgerClient, Web3LedgerClient  # noqa: E402
from services.notification_service import (  # noqa: E402
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    TelegramNotificationSink,
)
from services.repositories import (  # noqa: E402
    AuditLogRepository,
    EvidenceRepository,
    ModeratorRepository,
    UserRepository,
)
from utils.deal_locks import DealLockRegistry  # noqa: E402
from utils.deal_state_machine import DealStateMachine  # noqa: E402

logger = logging.getLogger(__name__)


@dataclass
class EscrowCore:
    """Fully wired escrow services sharing one store, ledger and sink"""
    deals: DealRepository
    users: UserRepository
    moderators: ModeratorRepository
    access: AccessControl
    state_machine: DealStateMachine
    notifier: NotificationDispatcher
    audit: AuditLogger
    deal_service: DealService
    dispute_service: DisputeResolutionService
    admin_service: AdminService
    reconciler: LedgerReconciler


def build_escrow_core(
    session_factory: sessionmaker,
    ledger: LedgerClient,
    sink: NotificationSink,
    botmaster_ids: Optional[Iterable[int]] = None,
    botmaster_handles: Optional[Iterable[str]] = None,
    audit_log_file: Optional[str] = None,
) -> EscrowCore:
    botmaster_ids = tuple(Config.BOTMASTER_IDS if botmaster_ids is None else botmaster_ids)
    botmaster_handles = tuple(Config.BOTMASTER_USERNAMES if botmaster_handles is None else botmaster_handles)

    deals = DealRepository(session_factory)
    users = UserRepository(session_factory)
    moderators = ModeratorRepository(session_factory)
    evidence = EvidenceRepository(session_factory)

    access = AccessControl(moderators, deals, botmaster_ids, botmaster_handles)
    state_machine = DealStateMachine(deals, DealLockRegistry())
    notifier = NotificationDispatcher(sink, users, botmaster_ids)
    audit = AuditLogger(AuditLogRepository(session_factory), log_file=audit_log_file)

    return EscrowCore(
        deals=deals,
        users=users,
        moderators=moderators,
        access=access,
        state_machine=state_machine,
        notifier=notifier,
        audit=audit,
        deal_service=DealService(deals, users, access, state_machine, ledger, notifier),
        dispute_service=DisputeResolutionService(
            deals, evidence, users, access, state_machine, ledger, notifier, audit,
            message_cooldown=ActionCooldown(
                Config.ADMIN_MESSAGE_COOLDOWN_SECONDS, max_entries=Config.COOLDOWN_CACHE_MAX_ENTRIES
            ),
        ),
        admin_service=AdminService(moderators, users, access, audit, notifier, Config.AUDIT_LOG_LIMIT),
        reconciler=LedgerReconciler(deals, state_machine, ledger, notifier),
    )


class EscrowStartupManager:
    """Clean startup manager with a deterministic sequence"""

    def __init__(self):
        self.core: Optional[EscrowCore] = None
        self.scheduler: Optional[EscrowScheduler] = None
        self.startup_errors = []

    def initialize_database(self) -> bool:
        from database import create_tables, test_connection

        try:
            logger.info("🗄️ Initializing database...")
            if not test_connection():
                raise RuntimeError("Database connection test failed")
            create_tables()
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    def initialize_services(self) -> bool:
        from database import SessionLocal

        try:
            ledger = Web3LedgerClient.from_config()
            sink = TelegramNotificationSink() if Config.BOT_TOKEN else LoggingNotificationSink()
            self.core = build_escrow_core(SessionLocal, ledger, sink, audit_log_file=Config.AUDIT_LOG_FILE or None)
            self.scheduler = EscrowScheduler(self.core.reconciler)
            logger.info("✅ Escrow services wired")
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}")
            self.startup_errors.append(f"Services: {e}")
            return False

    async def run(self) -> int:
        Config.log_environment_config()
        missing = Config.validate()
        if missing:
            logger.warning(f"⚠️ Missing configuration: {', '.join(missing)}")

        if not self.initialize_database() or not self.initialize_services():
            for error in self.startup_errors:
                logger.critical(f"🚨 STARTUP_FAILED: {error}")
            return 1

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

        self.scheduler.start()
        try:
            await stop_event.wait()
        finally:
            await self.scheduler.stop()
        return 0


def main() -> int:
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return asyncio.run(EscrowStartupManager().run())


if __name__ == "__main__":
    sys.exit(main())
