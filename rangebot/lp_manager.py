"""
Uniswap V4 PositionManager LP operations: open (mint) and close (burn).

Uses raw eth_abi encoding for action commands sent via modifyLiquidities().
Every builder computes its deadline when called, so the TransactionSubmitter
gets a fresh validity window on each attempt.
"""

import logging
import time

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from web3 import Web3
from web3.exceptions import Web3Exception

from rangebot import config as cfg
from rangebot.abi import load_abi
from rangebot.allocation import liquidity_for_amounts, sqrt_price_x96_at_tick
from rangebot.chain import hex_str
from rangebot.errors import QueryFailed
from rangebot.models import Confirmation, OpenedPosition, PoolState, Position, TickRange

logger = logging.getLogger(__name__)

# Max uint values used in approvals
MAX_UINT256 = 2**256 - 1
MAX_UINT160 = 2**160 - 1
MAX_UINT48 = 2**48 - 1

MODIFY_LIQUIDITIES = function_signature_to_4byte_selector("modifyLiquidities(bytes,uint256)")
ERC20_APPROVE = function_signature_to_4byte_selector("approve(address,uint256)")
PERMIT2_APPROVE = function_signature_to_4byte_selector("approve(address,address,uint160,uint48)")

MODIFY_GAS_LIMIT = 1_000_000
APPROVE_GAS_LIMIT = 100_000


class LPManager:
    """Encodes PositionManager commands and drives them through the submitter."""

    def __init__(self, w3: Web3, account, settings, submitter):
        self.w3 = w3
        self.account = account
        self.settings = settings
        self.submitter = submitter

        self.position_manager_address = to_checksum_address(settings.position_manager)
        self.permit2_address = to_checksum_address(settings.permit2)
        self.quote_address = to_checksum_address(settings.quote_address)
        self.base_address = to_checksum_address(settings.base_address)

        self.quote_token = w3.eth.contract(address=self.quote_address, abi=load_abi("erc20.json"))
        self.permit2 = w3.eth.contract(address=self.permit2_address, abi=load_abi("permit2.json"))

    # ------------------------------------------------------------------
    # Approvals (one-time setup)
    # ------------------------------------------------------------------

    def ensure_approvals(self) -> list[Confirmation]:
        """Approve quote token -> Permit2 -> PositionManager where missing.

        Native ETH needs no approval (sent as msg.value).
        """
        owner = self.account.address
        done = []
        try:
            erc20_allowance = self.quote_token.functions.allowance(
                owner, self.permit2_address
            ).call()
            p2_amount, p2_expiration, _ = self.permit2.functions.allowance(
                owner, self.quote_address, self.position_manager_address
            ).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise QueryFailed(f"allowance query failed: {e}") from e

        if erc20_allowance < MAX_UINT256 // 2:
            data = ERC20_APPROVE + abi_encode(
                ["address", "uint256"], [self.permit2_address, MAX_UINT256]
            )
            done.append(
                self.submitter.submit(
                    lambda: self._tx(self.quote_address, data, gas=APPROVE_GAS_LIMIT),
                    self.account,
                    description="quote.approve(Permit2)",
                )
            )
        else:
            logger.info("Quote token already approved for Permit2")

        if p2_amount < MAX_UINT160 // 2 or p2_expiration <= int(time.time()):
            data = PERMIT2_APPROVE + abi_encode(
                ["address", "address", "uint160", "uint48"],
                [self.quote_address, self.position_manager_address, MAX_UINT160, MAX_UINT48],
            )
            done.append(
                self.submitter.submit(
                    lambda: self._tx(self.permit2_address, data, gas=APPROVE_GAS_LIMIT),
                    self.account,
                    description="Permit2.approve(quote, PositionManager)",
                )
            )
        else:
            logger.info("Permit2 allowance for PositionManager already in place")
        return done

    # ------------------------------------------------------------------
    # Open position
    # ------------------------------------------------------------------

    def open_position(
        self,
        tick_range: TickRange,
        base_amount: float,
        quote_amount: float,
        pool_state: PoolState,
    ) -> OpenedPosition:
        """Mint a new position funded by at most base_amount / quote_amount.

        Actions: [MINT_POSITION, CLOSE_CURRENCY, CLOSE_CURRENCY, SWEEP]
        """
        amount0_max = int(base_amount * 10**self.settings.base_decimals)
        amount1_max = int(quote_amount * 10**self.settings.quote_decimals)
        liquidity = self.liquidity_for(tick_range, amount0_max, amount1_max, pool_state)
        if liquidity <= 0:
            raise ValueError(
                f"Amounts base={base_amount} quote={quote_amount} fund no liquidity "
                f"in ticks [{tick_range.lower_tick}, {tick_range.upper_tick}]"
            )

        logger.info(
            "Opening position: ticks=[%d, %d] liquidity=%d base_max=%d quote_max=%d",
            tick_range.lower_tick,
            tick_range.upper_tick,
            liquidity,
            amount0_max,
            amount1_max,
        )

        def build_tx() -> dict:
            mint_params = abi_encode(
                [
                    "(address,address,uint24,int24,address)",
                    "int24",
                    "int24",
                    "uint256",
                    "uint128",
                    "uint128",
                    "address",
                    "bytes",
                ],
                [
                    cfg.build_pool_key(self.settings),
                    tick_range.lower_tick,
                    tick_range.upper_tick,
                    liquidity,
                    amount0_max,
                    amount1_max,
                    self.account.address,
                    b"",
                ],
            )
            close_c0 = abi_encode(["address"], [self.base_address])
            close_c1 = abi_encode(["address"], [self.quote_address])
            # SWEEP recovers excess native ETH
            sweep = abi_encode(["address", "address"], [self.base_address, self.account.address])
            actions = bytes(
                [cfg.MINT_POSITION, cfg.CLOSE_CURRENCY, cfg.CLOSE_CURRENCY, cfg.SWEEP]
            )
            return self._modify_liquidities_tx(
                actions, [mint_params, close_c0, close_c1, sweep], value=amount0_max
            )

        confirmation = self.submitter.submit(build_tx, self.account, description="open position")
        token_id = self._parse_token_id_from_receipt(confirmation.receipt or {})
        position_id = str(token_id) if token_id is not None else confirmation.signature
        return OpenedPosition(
            id=position_id, signature=confirmation.signature, tick_range=tick_range
        )

    def liquidity_for(
        self, tick_range: TickRange, amount0: int, amount1: int, pool_state: PoolState
    ) -> int:
        """Liquidity for raw amounts, shaved by the slippage allowance."""
        shave = 1 - self.settings.slippage_percent / 100
        return liquidity_for_amounts(
            pool_state.sqrt_price_x96,
            sqrt_price_x96_at_tick(tick_range.lower_tick),
            sqrt_price_x96_at_tick(tick_range.upper_tick),
            int(amount0 * shave),
            int(amount1 * shave),
        )

    # ------------------------------------------------------------------
    # Close position
    # ------------------------------------------------------------------

    def close_position(self, position: Position) -> Confirmation:
        """Remove all liquidity, burn the NFT and withdraw both tokens.

        Actions: [BURN_POSITION, CLOSE_CURRENCY, CLOSE_CURRENCY]
        """
        token_id = int(position.id)
        logger.info("Closing position token_id=%d", token_id)

        def build_tx() -> dict:
            # (uint256 tokenId, uint128 amount0Min, uint128 amount1Min, bytes hookData)
            burn_params = abi_encode(
                ["uint256", "uint128", "uint128", "bytes"], [token_id, 0, 0, b""]
            )
            close_c0 = abi_encode(["address"], [self.base_address])
            close_c1 = abi_encode(["address"], [self.quote_address])
            actions = bytes([cfg.BURN_POSITION, cfg.CLOSE_CURRENCY, cfg.CLOSE_CURRENCY])
            return self._modify_liquidities_tx(actions, [burn_params, close_c0, close_c1])

        return self.submitter.submit(
            build_tx, self.account, description=f"close position {token_id}"
        )

    # ------------------------------------------------------------------
    # Internal: transaction dicts
    # ------------------------------------------------------------------

    def _modify_liquidities_tx(self, actions: bytes, params: list, value: int = 0) -> dict:
        """Encode unlockData with a deadline taken now."""
        deadline = int(time.time()) + self.settings.tx_deadline_seconds
        unlock_data = abi_encode(["bytes", "bytes[]"], [actions, params])
        data = MODIFY_LIQUIDITIES + abi_encode(["bytes", "uint256"], [unlock_data, deadline])
        return self._tx(self.position_manager_address, data, value=value, gas=MODIFY_GAS_LIMIT)

    def _tx(self, to: str, data: bytes, value: int = 0, gas: int = MODIFY_GAS_LIMIT) -> dict:
        return {
            "from": self.account.address,
            "to": to,
            "data": "0x" + data.hex(),
            "value": value,
            "gas": gas,
        }

    # ------------------------------------------------------------------
    # Parse token ID from receipt (ERC721 Transfer event)
    # ------------------------------------------------------------------

    def _parse_token_id_from_receipt(self, receipt) -> int | None:
        """Extract minted tokenId from ERC721 Transfer(from=0x0, to, id) event."""
        transfer_topic = hex_str(Web3.keccak(text="Transfer(address,address,uint256)"))
        zero_address_topic = "0x" + "0" * 64
        pm_address = self.position_manager_address.lower()

        for log in receipt.get("logs", []):
            if log["address"].lower() != pm_address:
                continue
            if len(log["topics"]) < 4:
                continue
            if hex_str(log["topics"][0]) != transfer_topic:
                continue
            # Transfer from 0x0 means a mint
            if hex_str(log["topics"][1]) == zero_address_topic:
                return int(hex_str(log["topics"][3]), 16)

        logger.warning("Could not parse token_id from receipt logs")
        return None
