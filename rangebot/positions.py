"""
PositionTracker enumerates the wallet's positions and classifies them
against the live price.

The PositionManager cannot list an owner's tokens, so the tracker keeps a JSON
registry of the token ids this bot opened and verifies each one on-chain
before reporting it.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from rangebot.abi import load_abi
from rangebot.allocation import amounts_for_liquidity, sqrt_price_x96_at_tick
from rangebot.errors import QueryFailed
from rangebot.models import PoolState, Position
from rangebot.ranges import tick_to_price

logger = logging.getLogger(__name__)


class PositionStore:
    """JSON-file registry of position records ({token_id, tick_lower, tick_upper, ...})."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> list[dict]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                records = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("Could not load positions from %s, returning empty", self.path)
            return []
        if not isinstance(records, list):
            logger.warning("Ignoring malformed positions file %s", self.path)
            return []
        return records

    def save(self, records: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(records, f, indent=2)
        os.replace(tmp, self.path)

    def add(
        self,
        token_id: int,
        tick_lower: int,
        tick_upper: int,
        entry_price: float | None = None,
    ) -> None:
        records = [r for r in self.load() if r.get("token_id") != token_id]
        record = {
            "token_id": token_id,
            "tick_lower": tick_lower,
            "tick_upper": tick_upper,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if entry_price is not None:
            record["entry_price"] = float(entry_price)
        records.append(record)
        self.save(records)
        logger.info("Saved position token_id=%d to %s", token_id, self.path)

    def remove(self, token_id: int, reason: str) -> None:
        records = self.load()
        kept = [r for r in records if r.get("token_id") != token_id]
        if len(kept) != len(records):
            self.save(kept)
            logger.info("Forgot position token_id=%s (%s)", token_id, reason)


class PositionTracker:
    def __init__(self, w3: Web3, settings, store: PositionStore, state_reader=None):
        self.w3 = w3
        self.settings = settings
        self.store = store
        self.state_reader = state_reader
        self.position_manager = w3.eth.contract(
            address=to_checksum_address(settings.position_manager),
            abi=load_abi("position_manager.json"),
        )

    @staticmethod
    def is_in_range(position: Position, current_price: float) -> bool:
        """Inclusive on both bounds."""
        return position.lower_price <= current_price <= position.upper_price

    def list_positions(self, owner: str, pool_state: PoolState | None = None) -> list[Position]:
        """Registry positions still owned by `owner`.

        Burned or transferred tokens are dropped from the registry. Any other
        read failure raises QueryFailed.
        """
        if pool_state is None and self.state_reader is not None:
            pool_state = self.state_reader.get_pool_state()

        owner = to_checksum_address(owner)
        positions = []
        for record in self.store.load():
            token_id = record.get("token_id")
            if token_id is None:
                continue
            try:
                token_owner = self.position_manager.functions.ownerOf(token_id).call()
                liquidity = self.position_manager.functions.getPositionLiquidity(token_id).call()
            except ContractLogicError as e:
                # ownerOf reverts for burned tokens
                self.store.remove(token_id, f"not readable on-chain: {e}")
                continue
            except (Web3Exception, ValueError, OSError) as e:
                logger.error("Failed to read position token_id=%s: %s", token_id, e)
                raise QueryFailed(f"position {token_id} query failed: {e}") from e

            if token_owner.lower() != owner.lower():
                logger.warning(
                    "Ignoring token_id=%s (owner=%s, expected=%s)", token_id, token_owner, owner
                )
                self.store.remove(token_id, "token no longer owned")
                continue

            position = self._to_position(record, owner, int(liquidity), pool_state)
            positions.append(position)

        logger.info("Found %d position(s) for %s", len(positions), owner)
        return positions

    def _to_position(
        self, record: dict, owner: str, liquidity: int, pool_state: PoolState | None
    ) -> Position:
        tick_lower = int(record["tick_lower"])
        tick_upper = int(record["tick_upper"])
        shift = self.settings.decimal_shift

        base_amount = quote_amount = 0.0
        if pool_state is not None and pool_state.sqrt_price_x96 > 0:
            amount0, amount1 = amounts_for_liquidity(
                pool_state.sqrt_price_x96,
                sqrt_price_x96_at_tick(tick_lower),
                sqrt_price_x96_at_tick(tick_upper),
                liquidity,
            )
            base_amount = amount0 / 10**self.settings.base_decimals
            quote_amount = amount1 / 10**self.settings.quote_decimals

        position = Position(
            id=str(record["token_id"]),
            owner=owner,
            lower_price=tick_to_price(tick_lower, shift),
            upper_price=tick_to_price(tick_upper, shift),
            base_amount=base_amount,
            quote_amount=quote_amount,
            lower_tick=tick_lower,
            upper_tick=tick_upper,
            liquidity=liquidity,
        )
        if pool_state is not None:
            position = position.with_in_range(self.is_in_range(position, pool_state.current_price))
        return position

    def record_opened(self, token_id: int, tick_lower: int, tick_upper: int, entry_price: float):
        self.store.add(token_id, tick_lower, tick_upper, entry_price=entry_price)

    def record_closed(self, token_id) -> None:
        self.store.remove(int(token_id), "closed")
