"""Tests for the EVM chain client."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.middleware import ExtraDataToPOAMiddleware

from exchange_custody.chains.base import RPCError
from exchange_custody.chains.evm import TRANSFER_EVENT_SIGNATURE, EVMChainClient
from exchange_custody.config import ChainConfig, TokenConfig
from exchange_custody.errors import ChainUnavailable

USDT = "0xdac17f958d2ee523a2206206994597c13d831ec7"
DEPOSIT = "0x1234567890abcdef1234567890abcdef12345678"
SENDER = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def _transfer_log(
    *,
    block_number: int,
    raw_amount: int,
    to: str = DEPOSIT,
    token: str = USDT,
    log_index: int = 0,
    tx_hash: bytes = b"\x11" * 32,
) -> dict:
    return {
        "address": token,
        "topics": [bytes.fromhex(TRANSFER_EVENT_SIGNATURE[2:]), _topic(SENDER), _topic(to)],
        "data": "0x" + f"{raw_amount:064x}",
        "blockNumber": block_number,
        "transactionHash": tx_hash,
        "logIndex": log_index,
        "removed": False,
    }


@pytest.fixture
def chain_config() -> ChainConfig:
    return ChainConfig(
        name="ethereum",
        family="evm",
        rpc_url="https://eth.example",
        native_symbol="ETH",
        required_confirmations=12,
        max_blocks_per_cycle=50,
        initial_lookback_blocks=10,
        scan_native=False,
        tokens=[TokenConfig(symbol="USDT", address=USDT, decimals=6)],
    )


@pytest.fixture
def client(chain_config: ChainConfig) -> EVMChainClient:
    """EVM client with the RPC surface mocked out."""
    client = EVMChainClient(chain_config, max_retries=1, retry_delay_seconds=0)
    client.get_block_number = AsyncMock(return_value=120)
    client.get_logs = AsyncMock(return_value=[])
    client.get_block = AsyncMock(return_value={"transactions": []})
    client.get_receipt_status = AsyncMock(return_value=1)
    return client


# ============================================================================
# Scan range and checkpoint
# ============================================================================


class TestCheckpoint:
    @pytest.mark.asyncio
    async def test_first_run_uses_lookback(self, client: EVMChainClient) -> None:
        result = await client.poll_incoming({DEPOSIT}, None)

        params = client.get_logs.await_args.args[0]
        assert params["fromBlock"] == 110
        assert params["toBlock"] == 120
        # Blocks above latest - 12 + 1 are not yet final and get rescanned.
        assert result.new_checkpoint == "109"

    @pytest.mark.asyncio
    async def test_range_bounded_per_cycle(self, client: EVMChainClient) -> None:
        client.get_block_number.return_value = 1_000

        result = await client.poll_incoming({DEPOSIT}, "100")

        params = client.get_logs.await_args.args[0]
        assert (params["fromBlock"], params["toBlock"]) == (101, 150)
        assert result.new_checkpoint == "150"

    @pytest.mark.asyncio
    async def test_checkpoint_never_regresses(self, client: EVMChainClient) -> None:
        result = await client.poll_incoming({DEPOSIT}, "115")
        # Matured block (109) is behind the checkpoint.
        assert result.new_checkpoint == "115"

    @pytest.mark.asyncio
    async def test_node_behind_checkpoint(self, client: EVMChainClient) -> None:
        client.get_block_number.return_value = 90

        result = await client.poll_incoming({DEPOSIT}, "100")

        assert result.events == []
        assert result.new_checkpoint == "100"
        client.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_addresses_still_advances(self, client: EVMChainClient) -> None:
        client.get_block_number.return_value = 1_000
        result = await client.poll_incoming(set(), "100")
        assert result.new_checkpoint == "150"
        client.get_logs.assert_not_awaited()


# ============================================================================
# Token transfers
# ============================================================================


class TestTokenTransfers:
    @pytest.mark.asyncio
    async def test_transfer_log_to_event(self, client: EVMChainClient) -> None:
        client.get_logs.return_value = [_transfer_log(block_number=110, raw_amount=250_500_000, log_index=4)]

        result = await client.poll_incoming({DEPOSIT}, "100")

        [event] = result.events
        assert event.chain == "ethereum"
        assert event.token_symbol == "USDT"
        assert event.amount == Decimal("250.5")
        assert event.to_address == DEPOSIT
        assert event.from_address == SENDER
        assert event.tx_hash == "0x" + "11" * 32
        assert event.block_number == 110
        assert event.confirmations == 11
        assert event.log_index == 4

    @pytest.mark.asyncio
    async def test_filters_on_recipient_topic(self, client: EVMChainClient) -> None:
        await client.poll_incoming({DEPOSIT.upper().replace("0X", "0x")}, "100")

        params = client.get_logs.await_args.args[0]
        assert params["topics"][0] == TRANSFER_EVENT_SIGNATURE
        assert params["topics"][2] == [_topic(DEPOSIT)]
        assert [a.lower() for a in params["address"]] == [USDT]

    @pytest.mark.asyncio
    async def test_addresses_batched(self, chain_config: ChainConfig) -> None:
        config = chain_config.model_copy(update={"address_batch_size": 2})
        client = EVMChainClient(config, max_retries=1, retry_delay_seconds=0)
        client.get_block_number = AsyncMock(return_value=120)
        client.get_logs = AsyncMock(return_value=[])

        await client.poll_incoming({f"0x{i:040x}" for i in range(1, 6)}, "100")

        assert client.get_logs.await_count == 3

    @pytest.mark.asyncio
    async def test_skips_nft_removed_and_unknown_contracts(self, client: EVMChainClient) -> None:
        nft = _transfer_log(block_number=110, raw_amount=0)
        nft["topics"] = [*nft["topics"], "0x" + "0" * 63 + "7"]
        removed = _transfer_log(block_number=111, raw_amount=5)
        removed["removed"] = True
        other_token = _transfer_log(block_number=112, raw_amount=5, token="0x" + "b" * 40)
        client.get_logs.return_value = [nft, removed, other_token]

        result = await client.poll_incoming({DEPOSIT}, "100")

        assert result.events == []

    @pytest.mark.asyncio
    async def test_zero_value_transfer_skipped(self, client: EVMChainClient) -> None:
        client.get_logs.return_value = [
            _transfer_log(block_number=105, raw_amount=0, tx_hash=b"\x05" * 32),
            _transfer_log(block_number=106, raw_amount=5_000_000, tx_hash=b"\x06" * 32),
        ]

        result = await client.poll_incoming({DEPOSIT}, "100")

        [event] = result.events
        assert event.block_number == 106
        assert event.amount == Decimal("5")

    @pytest.mark.asyncio
    async def test_events_sorted(self, client: EVMChainClient) -> None:
        client.get_logs.return_value = [
            _transfer_log(block_number=115, raw_amount=1, tx_hash=b"\x02" * 32),
            _transfer_log(block_number=110, raw_amount=1, tx_hash=b"\x01" * 32),
        ]
        result = await client.poll_incoming({DEPOSIT}, "100")
        assert [e.block_number for e in result.events] == [110, 115]


# ============================================================================
# Native transfers
# ============================================================================


class TestNativeTransfers:
    @pytest.mark.asyncio
    async def test_native_transfer(self, chain_config: ChainConfig) -> None:
        client = EVMChainClient(chain_config.model_copy(update={"scan_native": True}))
        client.get_block_number = AsyncMock(return_value=105)
        client.get_logs = AsyncMock(return_value=[])
        client.get_receipt_status = AsyncMock(side_effect=lambda tx_hash: 0 if tx_hash.endswith("22") else 1)

        def block(number: int) -> dict:
            if number != 103:
                return {"transactions": []}
            return {
                "transactions": [
                    {
                        "hash": b"\x21" * 32,
                        "from": SENDER,
                        "to": DEPOSIT.upper().replace("0X", "0x"),
                        "value": 5 * 10**17,
                        "transactionIndex": 2,
                    },
                    {"hash": b"\x22" * 32, "from": SENDER, "to": DEPOSIT, "value": 10**18, "transactionIndex": 3},
                    {"hash": b"\x23" * 32, "from": SENDER, "to": None, "value": 0, "transactionIndex": 4},
                    {"hash": b"\x24" * 32, "from": SENDER, "to": SENDER, "value": 10**18, "transactionIndex": 5},
                ]
            }

        client.get_block = AsyncMock(side_effect=block)

        result = await client.poll_incoming({DEPOSIT}, "100")

        # The reverted transfer (status 0) is dropped.
        [event] = result.events
        assert event.token_symbol == "ETH"
        assert event.amount == Decimal("0.5")
        assert event.to_address == DEPOSIT
        assert event.block_number == 103
        assert event.confirmations == 3
        assert client.get_block.await_count == 5


# ============================================================================
# Errors
# ============================================================================


class TestErrors:
    @pytest.mark.asyncio
    async def test_rpc_failure_is_chain_unavailable(self, client: EVMChainClient) -> None:
        client.get_block_number.side_effect = RPCError("all endpoints failed")

        with pytest.raises(ChainUnavailable) as exc_info:
            await client.poll_incoming({DEPOSIT}, "100")
        assert exc_info.value.chain == "ethereum"

    @pytest.mark.asyncio
    async def test_malformed_log_is_chain_unavailable(self, client: EVMChainClient) -> None:
        log = _transfer_log(block_number=110, raw_amount=1)
        del log["data"]
        client.get_logs.return_value = [log]

        with pytest.raises(ChainUnavailable):
            await client.poll_incoming({DEPOSIT}, "100")

    @pytest.mark.asyncio
    async def test_bad_checkpoint_is_chain_unavailable(self, client: EVMChainClient) -> None:
        with pytest.raises(ChainUnavailable):
            await client.poll_incoming({DEPOSIT}, "not-a-block")


class TestBlockNumberCache:
    @pytest.mark.asyncio
    async def test_cached_block_number(self, chain_config: ChainConfig) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=b"4242")
        client = EVMChainClient(chain_config, redis=redis)
        client._eth = AsyncMock()

        assert await client.get_block_number() == 4242
        client._eth.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_miss_stores_value(self, chain_config: ChainConfig) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        client = EVMChainClient(chain_config, redis=redis)
        client._eth = AsyncMock(return_value=777)

        assert await client.get_block_number() == 777
        redis.set.assert_awaited_once_with("custody:ethereum:block_number", "777", ex=2)


class TestClientConstruction:
    @pytest.mark.parametrize("name", ["ethereum", "bsc", "polygon"])
    def test_poa_middleware_on_every_evm_chain(self, chain_config: ChainConfig, name: str) -> None:
        config = chain_config.model_copy(update={"name": name, "fallback_rpc_url": "https://alt.example"})
        client = EVMChainClient(config)

        for w3 in (client._executor._primary, client._executor._fallback):
            assert ExtraDataToPOAMiddleware in w3.middleware_onion
