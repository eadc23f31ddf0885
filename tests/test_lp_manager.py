import itertools
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from eth_abi import decode
from eth_account import Account
from web3 import Web3

from rangebot import config as cfg
from rangebot.allocation import Q96
from rangebot.errors import QueryFailed
from rangebot.lp_manager import (
    ERC20_APPROVE,
    MAX_UINT160,
    MAX_UINT256,
    MODIFY_LIQUIDITIES,
    PERMIT2_APPROVE,
    LPManager,
)
from rangebot.models import Confirmation, PoolState, TickRange

from conftest import TEST_PRIVATE_KEY, make_position

SIGNATURE = "0x" + "99" * 32
TRANSFER_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)")


class RecordingSubmitter:
    def __init__(self, receipt=None):
        self.receipt = receipt
        self.builders = []
        self.txs = []
        self.descriptions = []

    def submit(self, build_tx, signer, max_attempts=None, description="transaction"):
        self.builders.append(build_tx)
        self.txs.append(build_tx())
        self.descriptions.append(description)
        return Confirmation(signature=SIGNATURE, attempts=1, receipt=self.receipt)


def mint_receipt(token_id, address=cfg.POSITION_MANAGER):
    return {
        "status": 1,
        "logs": [
            {
                "address": address,
                "topics": [
                    TRANSFER_TOPIC,
                    bytes(32),
                    bytes(12) + bytes.fromhex("ab" * 20),
                    token_id.to_bytes(32, "big"),
                ],
            }
        ],
    }


def make_manager(settings, receipt=None):
    submitter = RecordingSubmitter(receipt)
    account = Account.from_key(TEST_PRIVATE_KEY)
    return LPManager(MagicMock(), account, settings, submitter), submitter


def decode_modify(tx):
    data = bytes.fromhex(tx["data"][2:])
    assert data[:4] == MODIFY_LIQUIDITIES
    unlock_data, deadline = decode(["bytes", "uint256"], data[4:])
    actions, params = decode(["bytes", "bytes[]"], unlock_data)
    return actions, params, deadline


POOL_STATE = PoolState(current_price=1.0, tick_spacing=10, liquidity=10**18, sqrt_price_x96=Q96)


def test_open_position_encodes_mint(settings):
    manager, submitter = make_manager(settings, receipt=mint_receipt(4242))

    opened = manager.open_position(TickRange(-600, 600), 1.0, 1000.0, POOL_STATE)

    assert opened.id == "4242"
    assert opened.signature == SIGNATURE
    assert opened.tick_range == TickRange(-600, 600)

    tx = submitter.txs[0]
    assert tx["to"].lower() == cfg.POSITION_MANAGER.lower()
    assert tx["value"] == 10**18
    actions, params, _ = decode_modify(tx)
    assert actions == bytes([cfg.MINT_POSITION, cfg.CLOSE_CURRENCY, cfg.CLOSE_CURRENCY, cfg.SWEEP])

    pool_key, lower, upper, liquidity, amount0_max, amount1_max, recipient, _ = decode(
        ["(address,address,uint24,int24,address)", "int24", "int24", "uint256",
         "uint128", "uint128", "address", "bytes"],
        params[0],
    )
    assert (lower, upper) == (-600, 600)
    assert liquidity > 0
    assert amount0_max == 10**18
    assert amount1_max == 1000 * 10**6
    assert pool_key[2:4] == (settings.pool_fee, settings.tick_spacing)
    assert recipient.lower() == manager.account.address.lower()


def test_open_position_without_token_id_falls_back_to_signature(settings):
    manager, _ = make_manager(settings, receipt={"status": 1, "logs": []})

    opened = manager.open_position(TickRange(-600, 600), 1.0, 1000.0, POOL_STATE)

    assert opened.id == SIGNATURE


def test_open_position_with_nothing_to_deposit(settings):
    manager, submitter = make_manager(settings)

    with pytest.raises(ValueError):
        manager.open_position(TickRange(-600, 600), 0.0, 0.0, POOL_STATE)
    assert submitter.txs == []


def test_liquidity_is_shaved_by_slippage(settings):
    manager, _ = make_manager(settings)
    strict, _ = make_manager(replace(settings, slippage_percent=0.0))

    shaved = manager.liquidity_for(TickRange(-600, 600), 10**18, 10**9, POOL_STATE)
    full = strict.liquidity_for(TickRange(-600, 600), 10**18, 10**9, POOL_STATE)

    assert shaved < full
    assert shaved == pytest.approx(full * 0.99, rel=1e-6)


def test_each_build_gets_a_fresh_deadline(settings, monkeypatch):
    clock = itertools.count(1_000_000, 30)
    monkeypatch.setattr("rangebot.lp_manager.time.time", lambda: next(clock))
    manager, submitter = make_manager(settings)

    manager.close_position(make_position("17", 90.0, 110.0))
    retry_tx = submitter.builders[0]()

    _, _, first_deadline = decode_modify(submitter.txs[0])
    _, _, second_deadline = decode_modify(retry_tx)
    assert first_deadline >= 1_000_000 + settings.tx_deadline_seconds
    assert second_deadline > first_deadline


def test_close_position_encodes_burn(settings):
    manager, submitter = make_manager(settings)

    confirmation = manager.close_position(make_position("17", 90.0, 110.0))

    assert confirmation.signature == SIGNATURE
    tx = submitter.txs[0]
    assert tx["value"] == 0
    actions, params, _ = decode_modify(tx)
    assert actions == bytes([cfg.BURN_POSITION, cfg.CLOSE_CURRENCY, cfg.CLOSE_CURRENCY])
    token_id, amount0_min, amount1_min, _ = decode(
        ["uint256", "uint128", "uint128", "bytes"], params[0]
    )
    assert token_id == 17
    assert (amount0_min, amount1_min) == (0, 0)
    assert submitter.descriptions == ["close position 17"]


def test_parse_token_id_ignores_other_contracts(settings):
    manager, _ = make_manager(settings)
    receipt = mint_receipt(5, address="0x" + "cd" * 20)

    assert manager._parse_token_id_from_receipt(receipt) is None


def test_parse_token_id_ignores_plain_transfers(settings):
    manager, _ = make_manager(settings)
    receipt = mint_receipt(5)
    receipt["logs"][0]["topics"][1] = bytes(12) + bytes.fromhex("ef" * 20)

    assert manager._parse_token_id_from_receipt(receipt) is None


def test_ensure_approvals_sends_missing_approvals(settings):
    manager, submitter = make_manager(settings)
    manager.quote_token = MagicMock()
    manager.quote_token.functions.allowance.return_value.call.return_value = 0
    manager.permit2 = MagicMock()
    manager.permit2.functions.allowance.return_value.call.return_value = (0, 0, 0)

    done = manager.ensure_approvals()

    assert len(done) == 2
    erc20_tx, permit2_tx = submitter.txs
    assert erc20_tx["to"].lower() == cfg.USDC_ADDRESS.lower()
    assert erc20_tx["data"].startswith("0x" + ERC20_APPROVE.hex())
    assert permit2_tx["to"].lower() == cfg.PERMIT2.lower()
    assert permit2_tx["data"].startswith("0x" + PERMIT2_APPROVE.hex())


def test_ensure_approvals_skips_existing_allowances(settings):
    manager, submitter = make_manager(settings)
    manager.quote_token = MagicMock()
    manager.quote_token.functions.allowance.return_value.call.return_value = MAX_UINT256
    manager.permit2 = MagicMock()
    manager.permit2.functions.allowance.return_value.call.return_value = (
        MAX_UINT160,
        2**47,
        3,
    )

    assert manager.ensure_approvals() == []
    assert submitter.txs == []


def test_ensure_approvals_read_failure(settings):
    manager, _ = make_manager(settings)
    manager.quote_token = MagicMock()
    manager.quote_token.functions.allowance.return_value.call.side_effect = OSError("timeout")

    with pytest.raises(QueryFailed):
        manager.ensure_approvals()
