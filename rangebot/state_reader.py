"""
StateReader — reads Uniswap V4 pool state from StateView.

This is the price oracle: every call goes to the chain, nothing is cached.
"""

import logging

from web3 import Web3
from web3.exceptions import Web3Exception

from rangebot.abi import load_abi
from rangebot.allocation import sqrt_price_x96_to_price
from rangebot.errors import QueryFailed
from rangebot.models import PoolState
from rangebot.ranges import tick_to_price

logger = logging.getLogger(__name__)

_READ_ERRORS = (Web3Exception, ValueError, OSError)


class StateReader:
    """Reads Uniswap V4 pool state via the StateView contract."""

    def __init__(self, w3: Web3, settings):
        self.w3 = w3
        self.settings = settings

        # Pool ID as bytes32
        self.pool_id = bytes.fromhex(settings.resolved_pool_id().removeprefix("0x"))

        self.state_view = w3.eth.contract(
            address=Web3.to_checksum_address(settings.state_view),
            abi=load_abi("state_view.json"),
        )

    def get_slot0(self) -> dict:
        """Get pool slot0 data: sqrtPriceX96, tick, protocolFee, lpFee."""
        try:
            result = self.state_view.functions.getSlot0(self.pool_id).call()
        except _READ_ERRORS as e:
            logger.error("Failed to get slot0: %s", e)
            raise QueryFailed(f"getSlot0 failed: {e}") from e
        return {
            "sqrtPriceX96": result[0],
            "tick": result[1],
            "protocolFee": result[2],
            "lpFee": result[3],
        }

    def get_pool_liquidity(self) -> int:
        """Get current in-range liquidity for the pool."""
        try:
            return self.state_view.functions.getLiquidity(self.pool_id).call()
        except _READ_ERRORS as e:
            logger.error("Failed to get pool liquidity: %s", e)
            raise QueryFailed(f"getLiquidity failed: {e}") from e

    def get_current_price(self) -> float:
        """Base price in quote units, derived from sqrtPriceX96."""
        slot0 = self.get_slot0()
        return sqrt_price_x96_to_price(slot0["sqrtPriceX96"], self.settings.decimal_shift)

    def tick_to_price(self, tick: int) -> float:
        return tick_to_price(tick, self.settings.decimal_shift)

    def get_pool_state(self) -> PoolState:
        slot0 = self.get_slot0()
        liquidity = self.get_pool_liquidity()

        sqrt_price_x96 = slot0["sqrtPriceX96"]
        if sqrt_price_x96 <= 0:
            raise QueryFailed("Pool is not initialized (sqrtPriceX96 = 0)")

        price = sqrt_price_x96_to_price(sqrt_price_x96, self.settings.decimal_shift)
        logger.debug(
            "Pool: tick=%d price=%.4f liquidity=%d", slot0["tick"], price, liquidity
        )
        return PoolState(
            current_price=price,
            tick_spacing=self.settings.tick_spacing,
            liquidity=liquidity,
            sqrt_price_x96=sqrt_price_x96,
            tick=slot0["tick"],
        )
