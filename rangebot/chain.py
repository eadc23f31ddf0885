"""
Thin web3 wrapper for sending transactions and reading metadata.

Constructed explicitly and passed to the components that need it; there is no
module-level connection.
"""

import logging

from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from rangebot.errors import (
    ConfirmationTimeout,
    QueryFailed,
    TransactionRejected,
)

logger = logging.getLogger(__name__)


class ChainClient:
    """Owns the Web3 connection used by every on-chain component."""

    def __init__(self, w3: Web3):
        self.w3 = w3

    @classmethod
    def connect(cls, rpc_url: str, expected_chain_id: int | None = None) -> "ChainClient":
        logger.info("Connecting to RPC: %s", rpc_url)
        w3 = Web3(Web3.HTTPProvider(rpc_url))
        if not w3.is_connected():
            raise ConnectionError(f"Cannot connect to RPC at {rpc_url}")

        chain_id = w3.eth.chain_id
        if expected_chain_id is not None and chain_id != expected_chain_id:
            raise ConnectionError(
                f"RPC at {rpc_url} serves chain {chain_id}, expected {expected_chain_id}"
            )
        logger.info("Connected. Chain ID: %d", chain_id)
        return cls(w3)

    def network_name(self) -> str:
        try:
            return f"chain-{self.w3.eth.chain_id}"
        except Exception as e:
            logger.warning("Could not read chain id: %s", e)
            return "unknown"

    def fresh_validity(self, sender: str) -> dict:
        """Nonce, gas price and chain id read right now for `sender`.

        Called once per submission attempt so a retry never reuses stale values.
        """
        try:
            return {
                "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
                "gasPrice": self.w3.eth.gas_price,
                "chainId": self.w3.eth.chain_id,
            }
        except (Web3Exception, ValueError, OSError) as e:
            raise QueryFailed(f"Could not read transaction metadata: {e}") from e

    def send_and_confirm(self, tx: dict, signer, timeout: float) -> tuple[str, dict]:
        """Sign, broadcast and wait for a receipt.

        Returns (tx_hash_hex, receipt). Raises TransactionRejected when the RPC
        refuses the tx or it reverts, ConfirmationTimeout when no receipt
        arrives within `timeout` seconds.
        """
        signed = signer.sign_transaction(tx)
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError) as e:
            raise TransactionRejected(f"RPC rejected transaction: {e}") from e

        tx_hash_hex = hex_str(tx_hash)
        logger.info("Transaction sent: %s", tx_hash_hex)

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeout(
                f"No receipt for {tx_hash_hex} after {timeout:.0f}s"
            ) from e

        if receipt["status"] != 1:
            logger.error("Transaction reverted: tx=%s", tx_hash_hex)
            raise TransactionRejected(f"Transaction reverted: {tx_hash_hex}")

        return tx_hash_hex, receipt


def hex_str(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    text = text.lower()
    return text if text.startswith("0x") else "0x" + text
