"""XRP Ledger client over rippled JSON-RPC."""

import logging
from typing import Any, Optional

from xrpl.core.addresscodec import is_valid_classic_address

from custody.errors import ChainRejectionError, NetworkError
from custody.gateway.base import HttpChainClient, TransactionMeta, TransactionStatus

logger = logging.getLogger(__name__)

DEFAULT_FEE_DROPS = 12

# Query errors that are answers, not failures
ACCOUNT_NOT_FOUND = "actNotFound"
TX_NOT_FOUND = "txnNotFound"


class XrpClient(HttpChainClient):
    """rippled JSON-RPC client. Amounts are in drops."""

    async def _rpc(
        self,
        method: str,
        params: dict[str, Any],
        accept_errors: tuple[str, ...] = (),
    ) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            body = await self._post({"method": method, "params": [params]}, method)
            result = body.get("result")
            if not isinstance(result, dict):
                raise NetworkError(f"{method} returned no result", chain=self.chain)
            if result.get("status") == "error":
                code = result.get("error", "unknown")
                if code in accept_errors:
                    return result
                raise NetworkError(
                    f"{method} error: {code} {result.get('error_message', '')}".strip(),
                    chain=self.chain,
                )
            return result

        return await self._retry(attempt, method)

    async def get_account_info(self, address: str) -> Optional[dict[str, Any]]:
        """Account root data, or None if the account is not funded."""
        result = await self._rpc(
            "account_info",
            {"account": address, "ledger_index": "current", "strict": True},
            accept_errors=(ACCOUNT_NOT_FOUND,),
        )
        if result.get("error") == ACCOUNT_NOT_FOUND:
            return None
        return result.get("account_data", {})

    async def get_balance(self, address: str) -> int:
        info = await self.get_account_info(address)
        if info is None:
            return 0
        return int(info.get("Balance", "0"))

    async def get_fee(self) -> int:
        """Current open-ledger fee in drops."""
        result = await self._rpc("fee", {})
        drops = result.get("drops", {})
        fee = drops.get("open_ledger_fee") or drops.get("base_fee")
        return int(fee) if fee else DEFAULT_FEE_DROPS

    async def get_transaction_meta(self, address: str) -> TransactionMeta:
        info = await self.get_account_info(address)
        if info is None:
            raise NetworkError(f"Account {address} not found on ledger", chain=self.chain)
        fee = await self.get_fee()
        return TransactionMeta(nonce=int(info.get("Sequence", 0)), fee_rate=fee)

    async def broadcast(self, signed_tx: str) -> str:
        async def attempt() -> dict[str, Any]:
            body = await self._post({"method": "submit", "params": [{"tx_blob": signed_tx}]}, "submit")
            result = body.get("result")
            if not isinstance(result, dict):
                raise NetworkError("submit returned no result", chain=self.chain)
            return result

        result = await self._retry(attempt, "submit")

        if result.get("status") == "error":
            code = result.get("error", "unknown")
            raise ChainRejectionError(
                f"submit rejected: {code} {result.get('error_message', '')}".strip(),
                code=code,
                chain=self.chain,
            )

        engine_result = result.get("engine_result", "")
        if not engine_result.startswith("tes"):
            raise ChainRejectionError(
                f"submit rejected: {engine_result} {result.get('engine_result_message', '')}".strip(),
                code=engine_result,
                chain=self.chain,
            )

        tx_hash = result.get("tx_json", {}).get("hash")
        if not tx_hash:
            raise ChainRejectionError("submit returned no transaction hash", chain=self.chain)
        logger.info(f"Submitted XRP {self.network} tx {tx_hash}: {engine_result}")
        return tx_hash

    async def _get_tx(self, tx_hash: str) -> Optional[dict[str, Any]]:
        result = await self._rpc(
            "tx",
            {"transaction": tx_hash, "binary": False},
            accept_errors=(TX_NOT_FOUND,),
        )
        if result.get("error") == TX_NOT_FOUND:
            return None
        return result

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        tx = await self._get_tx(tx_hash)
        if tx is None:
            return TransactionStatus(tx_hash=tx_hash, validated=False, result="not_found")
        if not tx.get("validated"):
            return TransactionStatus(tx_hash=tx_hash, validated=False, result="pending", confirmations=0)

        result = tx.get("meta", {}).get("TransactionResult", "unknown")
        return TransactionStatus(
            tx_hash=tx_hash,
            validated=True,
            success=result == "tesSUCCESS",
            result=result,
            confirmations=1,
        )

    async def get_confirmations(self, tx_hash: str) -> Optional[int]:
        """A validated ledger is final, so depth is 1 once validated."""
        tx = await self._get_tx(tx_hash)
        if tx is None:
            return None
        return 1 if tx.get("validated") else 0

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_valid_classic_address(address)
