"""
Signing account plus base/quote balance reads.
"""

import logging

from eth_account import Account
from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import Web3Exception

from rangebot.abi import load_abi
from rangebot.errors import InvalidConfiguration, QueryFailed
from rangebot.models import Balances

logger = logging.getLogger(__name__)


def load_account(private_key: str):
    """Local signing account from a hex private key."""
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as e:
        # never echo the key back
        raise InvalidConfiguration(
            "Invalid private key format. Expected a 32-byte hex string."
        ) from e


class Wallet:
    """Native base token plus one ERC-20 quote token."""

    def __init__(self, w3: Web3, account, settings):
        self.w3 = w3
        self.account = account
        self.settings = settings
        self.quote_token = w3.eth.contract(
            address=to_checksum_address(settings.quote_address),
            abi=load_abi("erc20.json"),
        )

    @property
    def address(self) -> str:
        return self.account.address

    def get_base_balance(self) -> float:
        try:
            raw = self.w3.eth.get_balance(self.account.address)
        except (Web3Exception, ValueError, OSError) as e:
            logger.error("Failed to get base balance: %s", e)
            raise QueryFailed(f"base balance query failed: {e}") from e
        return raw / 10**self.settings.base_decimals

    def get_quote_balance(self) -> float:
        try:
            raw = self.quote_token.functions.balanceOf(self.account.address).call()
        except (Web3Exception, ValueError, OSError) as e:
            logger.error("Failed to get quote balance: %s", e)
            raise QueryFailed(f"quote balance query failed: {e}") from e
        return raw / 10**self.settings.quote_decimals

    def get_balances(self) -> Balances:
        return Balances(base=self.get_base_balance(), quote=self.get_quote_balance())
