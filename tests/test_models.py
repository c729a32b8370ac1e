"""
Tests for the SDK data models.
"""
import pytest
from pydantic import ValidationError

from bindlayer_sdk.models import FeeQuote, LogEvent, TransactionIntent, TxReceipt

TX_HASH = "0x" + "cd" * 32


class TestFeeQuote:

    def test_fee_market(self):
        quote = FeeQuote(max_fee_per_gas=30, max_priority_fee_per_gas=2)
        assert not quote.is_legacy
        assert quote.as_tx_fields() == {"maxFeePerGas": 30, "maxPriorityFeePerGas": 2}

    def test_legacy(self):
        quote = FeeQuote(gas_price=20)
        assert quote.is_legacy
        assert quote.as_tx_fields() == {"gasPrice": 20}

    @pytest.mark.parametrize("fields", [
        {},
        {"gas_price": 1, "max_fee_per_gas": 2, "max_priority_fee_per_gas": 1},
        {"max_fee_per_gas": 2},
        {"max_fee_per_gas": 1, "max_priority_fee_per_gas": 2},
    ])
    def test_invalid(self, fields):
        with pytest.raises(ValidationError):
            FeeQuote(**fields)

    def test_bumped(self):
        assert FeeQuote(gas_price=100).bumped(10).gas_price == 110
        # Rounds up, and always by at least one wei
        assert FeeQuote(gas_price=5).bumped(10).gas_price == 6
        bumped = FeeQuote(max_fee_per_gas=3, max_priority_fee_per_gas=0).bumped(10)
        assert (bumped.max_fee_per_gas, bumped.max_priority_fee_per_gas) == (4, 1)

    def test_frozen(self):
        quote = FeeQuote(gas_price=1)
        with pytest.raises(ValidationError):
            quote.gas_price = 2


class TestLogEvent:

    def test_rpc_fields(self):
        log = LogEvent.model_validate({
            "address": "0x1234567890123456789012345678901234567890",
            "topics": [b"\x01" * 32],
            "data": b"\x00",
            "blockNumber": "0x10",
            "transactionHash": TX_HASH.upper().replace("0X", "0x"),
            "logIndex": "0x2",
        })
        assert log.block_number == 16
        assert log.log_index == 2
        assert log.topic0 == "0x" + "01" * 32
        assert log.data == "0x00"
        assert log.key == (TX_HASH, 2)
        assert log.removed is False

    def test_missing_identity(self):
        with pytest.raises(ValidationError):
            LogEvent.model_validate({"address": "0x00", "topics": []})


class TestTxReceipt:

    def test_from_rpc(self):
        receipt = TxReceipt.model_validate({
            "transactionHash": TX_HASH,
            "blockNumber": "0x5",
            "blockHash": "0x" + "00" * 32,
            "status": "0x0",
            "gasUsed": 21000,
            "from": "0x1234567890123456789012345678901234567890",
            "to": None,
            "contractAddress": None,
            "logs": [],
            "revertReason": "boom",
        })
        assert receipt.block_number == 5
        assert not receipt.succeeded
        assert receipt.revert_reason == "boom"


def test_intent_without_target_is_deployment():
    assert TransactionIntent(data="0x60").is_deployment
    assert not TransactionIntent(to="0x1234567890123456789012345678901234567890").is_deployment
