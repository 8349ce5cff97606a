"""EVM JSON-RPC client (Ethereum, Sepolia, BSC, Polygon)."""

import itertools
import logging
from typing import Any, Optional

from eth_utils import is_address

from custody.errors import ChainRejectionError, NetworkError
from custody.gateway.base import HttpChainClient, TransactionMeta, TransactionStatus

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def _hex_to_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


class EvmClient(HttpChainClient):
    """JSON-RPC 2.0 client for EVM nodes."""

    async def _rpc(self, method: str, params: list[Any], submit: bool = False) -> Any:
        """Call a JSON-RPC method.

        Query errors are treated as transient and retried. Errors returned for
        a submission are chain rejections and are raised without retry.
        """

        async def attempt() -> Any:
            body = await self._post(
                {"jsonrpc": "2.0", "method": method, "params": params, "id": next(_ids)},
                method,
            )
            error = body.get("error")
            if error:
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                if submit:
                    code = error.get("code") if isinstance(error, dict) else None
                    raise ChainRejectionError(
                        f"{method} rejected: {message}",
                        code=str(code) if code is not None else None,
                        chain=self.chain,
                    )
                raise NetworkError(f"{method} error: {message}", chain=self.chain)
            return body.get("result")

        return await self._retry(attempt, method)

    async def get_balance(self, address: str) -> int:
        return _hex_to_int(await self._rpc("eth_getBalance", [address, "latest"]))

    async def get_nonce(self, address: str) -> int:
        """Next nonce, counting transactions still in the mempool."""
        return _hex_to_int(await self._rpc("eth_getTransactionCount", [address, "pending"]))

    async def get_gas_price(self) -> int:
        return _hex_to_int(await self._rpc("eth_gasPrice", []))

    async def get_block_number(self) -> int:
        return _hex_to_int(await self._rpc("eth_blockNumber", []))

    async def get_transaction_meta(self, address: str) -> TransactionMeta:
        nonce = await self.get_nonce(address)
        gas_price = await self.get_gas_price()
        return TransactionMeta(nonce=nonce, fee_rate=gas_price)

    async def broadcast(self, signed_tx: str) -> str:
        raw = signed_tx if signed_tx.startswith("0x") else "0x" + signed_tx
        tx_hash = await self._rpc("eth_sendRawTransaction", [raw], submit=True)
        if not tx_hash:
            raise ChainRejectionError("eth_sendRawTransaction returned no hash", chain=self.chain)
        logger.info(f"Broadcast {self.network} tx {tx_hash}")
        return tx_hash

    async def _get_receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return await self._rpc("eth_getTransactionReceipt", [tx_hash])

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        receipt = await self._get_receipt(tx_hash)
        if not receipt:
            return TransactionStatus(tx_hash=tx_hash, validated=False, result="pending")

        success = receipt.get("status") == "0x1"
        confirmations = None
        if receipt.get("blockNumber"):
            tip = await self.get_block_number()
            confirmations = max(0, tip - _hex_to_int(receipt["blockNumber"]) + 1)

        return TransactionStatus(
            tx_hash=tx_hash,
            validated=True,
            success=success,
            result="success" if success else "reverted",
            confirmations=confirmations,
        )

    async def get_confirmations(self, tx_hash: str) -> Optional[int]:
        receipt = await self._get_receipt(tx_hash)
        if not receipt or not receipt.get("blockNumber"):
            # Known to the node but not mined yet
            tx = await self._rpc("eth_getTransactionByHash", [tx_hash])
            return 0 if tx else None

        tip = await self.get_block_number()
        return max(0, tip - _hex_to_int(receipt["blockNumber"]) + 1)

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_address(address)
