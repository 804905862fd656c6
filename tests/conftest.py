"""
Shared Test Fixtures for the Escrow Core

Key Components:
1. In-memory SQLite database (StaticPool) with the full schema per test
2. Fake ledger and recording notification sink from the escrow test foundation
3. Fully wired EscrowCore with deterministic deal codes
4. Deals already driven into Pending, Funded and Disputed
"""

import logging
import warnings

import pytest
import pytest_asyncio

from database import build_engine, make_session_factory
from main import build_escrow_core
from models import Base
from tests.escrow_test_foundation import (
    BOTMASTER,
    BUYER,
    BUYER_WALLET,
    MODERATOR,
    MODERATOR_WALLET,
    SECOND_MODERATOR,
    SELLER,
    SELLER_WALLET,
    FakeLedgerClient,
    RecordingSink,
    make_disputed,
    make_funded,
    make_pending,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

warnings.filterwarnings("ignore", message=".*Enable tracemalloc.*")


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def code_sequence():
    """Deterministic deal codes, overridable per test"""
    return iter(["XX-7Q2K", "XX-8R3L", "XX-9S4M", "XX-2T5N", "XX-3U6P", "XX-4V7Q"])


@pytest.fixture
def core(session_factory, ledger, sink, code_sequence):
    core = build_escrow_core(
        session_factory, ledger, sink,
        botmaster_ids=[BOTMASTER.platform_id],
        botmaster_handles=[],
    )
    core.deal_service._code_generator = lambda: next(code_sequence)
    core.dispute_service.message_cooldown.seconds = 0
    return core


@pytest.fixture
def registered(core):
    """Seller, buyer and moderator with wallets; moderator granted"""
    core.deal_service.register_wallet(SELLER, SELLER_WALLET)
    core.deal_service.register_wallet(BUYER, BUYER_WALLET)
    core.deal_service.register_wallet(MODERATOR, MODERATOR_WALLET)
    core.users.upsert(SECOND_MODERATOR.platform_id, SECOND_MODERATOR.handle)
    core.users.upsert(BOTMASTER.platform_id, BOTMASTER.handle)
    core.moderators.grant(MODERATOR.platform_id, MODERATOR.handle, granted_by=BOTMASTER.platform_id)
    core.moderators.grant(SECOND_MODERATOR.platform_id, SECOND_MODERATOR.handle, granted_by=BOTMASTER.platform_id)
    return core


@pytest_asyncio.fixture
async def pending_deal(registered):
    return await make_pending(registered)


@pytest_asyncio.fixture
async def funded_deal(registered, ledger):
    return await make_funded(registered, ledger)


@pytest_asyncio.fixture
async def disputed_deal(registered, ledger):
    return await make_disputed(registered, ledger)
