"""Tests for the EVM JSON-RPC client."""

import json

import httpx
import pytest

from custody.chains import get_chain_spec
from custody.errors import ChainRejectionError, NetworkError
from custody.gateway.evm import EvmClient
from custody.gateway.retry import RetryPolicy

ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
TX_HASH = "0x" + "ab" * 32


class RpcNode:
    """Scripted JSON-RPC node for httpx.MockTransport."""

    def __init__(self, results=None):
        self.results = results or {}
        self.requests = []
        self.failures = []  # responses served before normal results

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.failures:
            return self.failures.pop(0)
        method = body["method"]
        result = self.results.get(method)
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **result})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def methods(self):
        return [r["method"] for r in self.requests]


def make_client(node: RpcNode, max_retries: int = 2) -> EvmClient:
    return EvmClient(
        get_chain_spec("evm", "ethereum"),
        "http://eth.node.test",
        retry_policy=RetryPolicy(max_retries=max_retries, initial_delay_ms=0, jitter=0),
        transport=httpx.MockTransport(node),
    )


class TestEvmQueries:
    """Tests for read calls."""

    @pytest.mark.asyncio
    async def test_get_balance(self):
        node = RpcNode({"eth_getBalance": hex(2 * 10**18)})
        client = make_client(node)

        assert await client.get_balance(ADDRESS) == 2 * 10**18
        assert node.requests[0]["params"] == [ADDRESS, "latest"]
        await client.close()

    @pytest.mark.asyncio
    async def test_transaction_meta_uses_pending_nonce(self):
        node = RpcNode({"eth_getTransactionCount": "0x7", "eth_gasPrice": hex(20 * 10**9)})
        client = make_client(node)

        meta = await client.get_transaction_meta(ADDRESS)

        assert meta.nonce == 7
        assert meta.fee_rate == 20 * 10**9
        assert node.requests[0]["params"] == [ADDRESS, "pending"]
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self):
        node = RpcNode({"eth_gasPrice": "0x1"})
        node.failures.append(httpx.Response(429, headers={"Retry-After": "0"}))
        client = make_client(node)

        assert await client.get_gas_price() == 1
        assert len(node.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_budget(self):
        node = RpcNode()
        node.failures.extend(httpx.Response(502) for _ in range(10))
        client = make_client(node, max_retries=2)

        with pytest.raises(NetworkError):
            await client.get_block_number()
        assert len(node.requests) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_query_rpc_error_is_retried(self):
        node = RpcNode({"eth_blockNumber": {"error": {"code": -32000, "message": "header not found"}}})
        client = make_client(node, max_retries=1)

        with pytest.raises(NetworkError):
            await client.get_block_number()
        assert len(node.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = EvmClient(
            get_chain_spec("evm", "ethereum"),
            "http://eth.node.test",
            retry_policy=RetryPolicy(max_retries=0, initial_delay_ms=0, jitter=0),
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(NetworkError):
            await client.get_balance(ADDRESS)
        await client.close()


class TestEvmTransactions:
    """Tests for broadcast and status."""

    @pytest.mark.asyncio
    async def test_broadcast_returns_hash(self):
        node = RpcNode({"eth_sendRawTransaction": TX_HASH})
        client = make_client(node)

        assert await client.broadcast("f86c01") == TX_HASH
        assert node.requests[0]["params"] == ["0xf86c01"]
        await client.close()

    @pytest.mark.asyncio
    async def test_broadcast_rejection_not_retried(self):
        node = RpcNode({"eth_sendRawTransaction": {"error": {"code": -32000, "message": "nonce too low"}}})
        client = make_client(node)

        with pytest.raises(ChainRejectionError) as exc_info:
            await client.broadcast("0xf86c01")
        assert "nonce too low" in str(exc_info.value)
        assert exc_info.value.code == "-32000"
        assert len(node.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_status_without_receipt(self):
        node = RpcNode({"eth_getTransactionReceipt": None})
        client = make_client(node)

        status = await client.get_transaction_status(TX_HASH)
        assert not status.validated
        assert status.success is None
        await client.close()

    @pytest.mark.asyncio
    async def test_status_success_with_confirmations(self):
        node = RpcNode({
            "eth_getTransactionReceipt": {"status": "0x1", "blockNumber": hex(100)},
            "eth_blockNumber": hex(111),
        })
        client = make_client(node)

        status = await client.get_transaction_status(TX_HASH)
        assert status.validated
        assert status.success
        assert status.confirmations == 12
        await client.close()

    @pytest.mark.asyncio
    async def test_status_reverted(self):
        node = RpcNode({
            "eth_getTransactionReceipt": {"status": "0x0", "blockNumber": hex(100)},
            "eth_blockNumber": hex(100),
        })
        client = make_client(node)

        status = await client.get_transaction_status(TX_HASH)
        assert status.validated
        assert status.success is False
        assert status.result == "reverted"
        await client.close()

    @pytest.mark.asyncio
    async def test_confirmations_unknown_tx(self):
        node = RpcNode({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": None})
        client = make_client(node)

        assert await client.get_confirmations(TX_HASH) is None
        await client.close()

    @pytest.mark.asyncio
    async def test_confirmations_in_mempool(self):
        node = RpcNode({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": {"hash": TX_HASH}})
        client = make_client(node)

        assert await client.get_confirmations(TX_HASH) == 0
        await client.close()


class TestEvmAddresses:
    """Tests for address validation."""

    def test_validate_address(self):
        client = make_client(RpcNode())
        assert client.validate_address(ADDRESS)
        assert client.validate_address(ADDRESS.lower())
        assert not client.validate_address("0x1234")
        assert not client.validate_address("")
