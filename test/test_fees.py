#!/usr/bin/env python3
"""Tests for withdrawal fee estimation."""

from unittest.mock import MagicMock

import pytest

from mixer_client.exceptions import ValidationError
from mixer_client.fees import DEFAULT_WITHDRAW_GAS, Web3FeeOracle

GWEI = 10**9
TX = {"to": "0x" + "ab" * 20, "data": "0x1234", "value": 0}


@pytest.fixture
def w3():
    w3 = MagicMock()
    w3.eth.gas_price = 20 * GWEI
    w3.eth.estimate_gas.return_value = 500_000
    return w3


class TestWeb3FeeOracle:
    """Tests for Web3FeeOracle."""

    def test_relayer_fee_is_percent_of_amount(self, w3):
        oracle = Web3FeeOracle(w3)

        assert oracle.relayer_fee(0.4, "1", 18) == 4 * 10**15
        assert oracle.relayer_fee(0.05, "100", 6) == 50_000
        assert oracle.relayer_fee(0, "10", 18) == 0

    def test_native_pool_fee(self, w3):
        oracle = Web3FeeOracle(w3)

        fee = oracle.withdrawal_fee_via_relayer(TX, 0.1, "1", 18)

        # 500k gas at 20 gwei plus 0.1% of 1 ETH
        assert fee == 10**16 + 10**15
        w3.eth.estimate_gas.assert_called_once_with(TX)

    def test_gas_estimate_failure_uses_default(self, w3):
        w3.eth.estimate_gas.side_effect = ValueError("execution reverted")
        oracle = Web3FeeOracle(w3)

        assert oracle.gas_limit(TX) == DEFAULT_WITHDRAW_GAS
        assert oracle.withdrawal_fee_via_relayer(TX, 0, "1", 18) == DEFAULT_WITHDRAW_GAS * 20 * GWEI

    def test_token_pool_fee_converts_gas_and_refund(self, w3):
        oracle = Web3FeeOracle(w3)
        price = 5 * 10**14  # wei per token

        fee = oracle.withdrawal_fee_via_relayer(TX, 0.4, "100", 18, refund=10**16, token_price_in_eth=price)

        # (0.01 ETH gas + 0.01 ETH refund) / 0.0005 ETH per token = 40 tokens, plus 0.4 tokens
        assert fee == 40 * 10**18 + 4 * 10**17

    def test_token_pool_rejects_invalid_price(self, w3):
        with pytest.raises(ValidationError, match="invalid token price"):
            Web3FeeOracle(w3).withdrawal_fee_via_relayer(TX, 0.4, "100", 18, token_price_in_eth=0)
