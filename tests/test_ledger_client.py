"""
Web3 ledger client against a mocked provider
"""

import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from web3.exceptions import TimeExhausted

from services.ledger_client import (
    LedgerStatus,
    TxOutcome,
    Web3LedgerClient,
    Web3TxHandle,
    confirm_transaction,
)
from utils.exceptions import LedgerError, LedgerTimeoutError

CONTRACT = "0x" + "11" * 20
SELLER_WALLET = "0x" + "a1" * 20
BUYER_WALLET = "0x" + "b2" * 20


@pytest.fixture
def w3():
    w3 = MagicMock()
    w3.eth.send_raw_transaction.return_value = b"\x12" * 32
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.gas_price = 1000
    return w3


@pytest.fixture
def contract(w3):
    return w3.eth.contract.return_value


@pytest.fixture
def client(w3):
    return Web3LedgerClient(
        rpc_url="http://localhost:8545",
        contract_address=CONTRACT,
        private_key="0x" + "01" * 32,
        chain_id=84532,
        token_decimals=6,
        call_timeout=0.2,
        gas_limit=250000,
        w3=w3,
    )


def _record(status):
    return ("TL-7Q2K", SELLER_WALLET, BUYER_WALLET, 50_000_000, status, 0, 0)


class TestReads:

    @pytest.mark.asyncio
    async def test_correlation_id(self, client, contract):
        contract.functions.externalIdToDealId.return_value.call.return_value = 42
        assert await client.resolve_correlation_id("TL-7Q2K") == 42
        contract.functions.externalIdToDealId.assert_called_with("TL-7Q2K")

    @pytest.mark.asyncio
    async def test_zero_means_unknown(self, client, contract):
        contract.functions.externalIdToDealId.return_value.call.return_value = 0
        assert await client.resolve_correlation_id("TL-7Q2K") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,status", [(0, LedgerStatus.PENDING), (1, LedgerStatus.FUNDED), (4, LedgerStatus.DISPUTED)])
    async def test_status_decoded(self, client, contract, code, status):
        contract.functions.deals.return_value.call.return_value = _record(code)
        assert await client.read_status(42) is status

    @pytest.mark.asyncio
    async def test_unknown_status_code(self, client, contract):
        contract.functions.deals.return_value.call.return_value = _record(9)
        with pytest.raises(LedgerError):
            await client.read_status(42)

    @pytest.mark.asyncio
    async def test_rpc_error_wrapped(self, client, contract):
        contract.functions.deals.return_value.call.side_effect = ConnectionError("connection refused")
        with pytest.raises(LedgerError) as exc_info:
            await client.read_status(42)
        assert not isinstance(exc_info.value, LedgerTimeoutError)

    @pytest.mark.asyncio
    async def test_slow_rpc_times_out(self, client, contract):
        contract.functions.deals.return_value.call.side_effect = lambda: time.sleep(1)
        with pytest.raises(LedgerTimeoutError):
            await client.read_status(42)


class TestWrites:

    def test_base_units(self, client):
        assert client.to_base_units(Decimal("50")) == 50_000_000
        assert client.to_base_units(Decimal("0.000001")) == 1

    @pytest.mark.asyncio
    async def test_create_deal_transaction(self, client, w3, contract):
        handle = await client.create_on_ledger("TL-7Q2K", SELLER_WALLET, BUYER_WALLET, Decimal("50"))
        assert handle.tx_hash == "0x" + "12" * 32

        args = contract.functions.createDeal.call_args[0]
        assert args[0] == "TL-7Q2K"
        assert args[3] == 50_000_000

        tx_params = contract.functions.createDeal.return_value.build_transaction.call_args[0][0]
        assert tx_params["chainId"] == 84532
        assert tx_params["gas"] == 250000
        assert tx_params["nonce"] == 7

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,contract_fn", [
        ("mark_disputed", "dispute"),
        ("resolve_release", "resolveRelease"),
        ("resolve_refund", "refund"),
    ])
    async def test_contract_function_mapping(self, client, contract, method, contract_fn):
        await getattr(client, method)(42)
        getattr(contract.functions, contract_fn).assert_called_once_with(42)

    @pytest.mark.asyncio
    async def test_send_failure_wrapped(self, client, w3):
        w3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")
        with pytest.raises(LedgerError):
            await client.mark_disputed(42)


class TestConfirmation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("receipt_status,outcome", [(1, TxOutcome.CONFIRMED), (0, TxOutcome.FAILED)])
    async def test_receipt_status(self, w3, receipt_status, outcome):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": receipt_status}
        assert await Web3TxHandle(w3, "0xabc").await_confirmation(1) is outcome

    @pytest.mark.asyncio
    async def test_not_mined_in_time(self, w3):
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not in chain")
        assert await Web3TxHandle(w3, "0xabc").await_confirmation(1) is TxOutcome.TIMED_OUT

    @pytest.mark.asyncio
    async def test_confirm_transaction(self, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
        assert await confirm_transaction(Web3TxHandle(w3, "0xabc"), "refund(42)", timeout=1) == "0xabc"

        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not in chain")
        with pytest.raises(LedgerTimeoutError):
            await confirm_transaction(Web3TxHandle(w3, "0xabc"), "refund(42)", timeout=1)
