"""Fee estimation for relayed and direct withdrawals."""

import logging
from decimal import Decimal
from typing import Protocol

from web3 import Web3
from web3.types import TxParams

from .exceptions import ValidationError
from .utils.encoding import to_base_units

logger = logging.getLogger(__name__)

# Gas limit used when the node cannot estimate a withdrawal with a provisional proof
DEFAULT_WITHDRAW_GAS = 550000


class FeeOracle(Protocol):
    def relayer_fee(self, service_fee_percent: float, amount: str, decimals: int) -> int:
        """Relayer service fee alone, in the pool token's base units."""
        ...

    def withdrawal_fee_via_relayer(
        self,
        tx: TxParams,
        service_fee_percent: float,
        amount: str,
        decimals: int,
        refund: int = 0,
        token_price_in_eth: int | None = None,
    ) -> int:
        """Total relayed withdrawal fee (service fee plus submission cost) in base units."""
        ...


class Web3FeeOracle:
    """Prices withdrawals from the node's gas price and gas estimate."""

    def __init__(self, w3: Web3, default_gas: int = DEFAULT_WITHDRAW_GAS):
        self.w3 = w3
        self.default_gas = default_gas

    def relayer_fee(self, service_fee_percent: float, amount: str, decimals: int) -> int:
        base_units = to_base_units(amount, decimals)
        return int(Decimal(base_units) * Decimal(str(service_fee_percent)) / Decimal(100))

    def gas_limit(self, tx: TxParams) -> int:
        try:
            return int(self.w3.eth.estimate_gas(tx))
        except Exception as e:
            logger.warning(f"Gas estimation failed, using default of {self.default_gas}: {e}")
            return self.default_gas

    def withdrawal_fee_via_relayer(
        self,
        tx: TxParams,
        service_fee_percent: float,
        amount: str,
        decimals: int,
        refund: int = 0,
        token_price_in_eth: int | None = None,
    ) -> int:
        """
        Total fee a relayer charges for submitting ``tx``.

        For token pools the gas cost and the refund are paid in the native
        currency by the relayer and converted into tokens at the relayer's
        quoted price.

        Raises:
            ValidationError: If a token pool has no quoted price
        """
        gas_cost = int(self.w3.eth.gas_price) * self.gas_limit(tx)
        service_fee = self.relayer_fee(service_fee_percent, amount, decimals)

        if token_price_in_eth is None:
            return gas_cost + service_fee

        token_price = int(token_price_in_eth)
        if token_price <= 0:
            raise ValidationError("Relayer quoted an invalid token price")
        return (gas_cost + refund) * 10**decimals // token_price + service_fee
