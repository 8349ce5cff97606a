"""On-chain balance aggregation across deposit addresses."""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.chains import get_chain_spec
from custody.errors import CustodyError
from custody.gateway.factory import ClientRegistry
from custody.ledger.database import session_scope
from custody.ledger.models import DepositAddress
from custody.ledger.repository import LedgerRepository
from custody.units import format_amount, to_display

logger = logging.getLogger(__name__)


class BalanceAggregator:
    """Sums live balances of deposit addresses."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clients: ClientRegistry,
        concurrency: int = 10,
    ):
        self.session_factory = session_factory
        self.clients = clients
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _fetch(self, record: DepositAddress) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "address": record.address,
            "user_id": record.user_id,
            "chain": record.chain,
            "network": record.network,
            "asset": record.asset,
        }
        async with self._semaphore:
            try:
                spec = get_chain_spec(record.chain, record.network)
                client = self.clients.get(spec.chain, spec.network)
                entry["balance"] = format_amount(to_display(await client.get_balance(record.address), spec.decimals))
            except CustodyError as e:
                logger.warning(f"Balance lookup failed for {record.address}: {e}")
                entry["balance"] = "0"
                entry["error"] = e.message
        return entry

    async def aggregate(
        self,
        chain: Optional[str] = None,
        network: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> dict[str, Any]:
        """Live balance per deposit address plus a summary.

        Per-address failures are reported inline with a zero balance and do
        not fail the aggregation.
        """
        async with session_scope(self.session_factory) as session:
            records = await LedgerRepository(session).list_deposit_addresses(chain, network, asset)

        if not records:
            return {"success": True, "balances": [], "summary": None}

        balances = await asyncio.gather(*(self._fetch(record) for record in records))
        total = sum((Decimal(entry["balance"]) for entry in balances), Decimal("0"))

        summary = {
            "chain": chain,
            "network": network,
            "asset": asset.upper() if asset else None,
            "totalBalance": format_amount(total),
            "addressCount": len(balances),
        }
        logger.info(f"Aggregated {len(balances)} addresses: total {summary['totalBalance']}")
        return {"success": True, "balances": list(balances), "summary": summary}
