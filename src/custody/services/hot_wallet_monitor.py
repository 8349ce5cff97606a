"""Hot wallet balance monitoring."""

import logging
from decimal import Decimal
from typing import Any

from custody.errors import CustodyError
from custody.ledger.models import AuditAction
from custody.services.audit import AuditLogger
from custody.services.withdrawal_processor import HotWalletRegistry
from custody.units import format_amount

logger = logging.getLogger(__name__)


class HotWalletMonitor:
    """Raises a security alert when a hot wallet drops below its minimum."""

    def __init__(self, registry: HotWalletRegistry, audit: AuditLogger, min_balance: Decimal):
        self.registry = registry
        self.audit = audit
        self.min_balance = min_balance

    async def check_balances(self, chain: str, network: str) -> list[dict[str, Any]]:
        """Sample every active wallet. Never raises."""
        try:
            entries = await self.registry.balances(chain, network)
        except CustodyError as e:
            logger.error(f"Hot wallet check failed for {chain}:{network}: {e}")
            return []

        for entry in entries:
            balance = entry.get("balance")
            if balance is None:
                logger.warning(f"Could not read hot wallet {entry['wallet_id']}: {entry.get('error')}")
                entry["below_minimum"] = False
                continue

            entry["below_minimum"] = balance < self.min_balance
            if entry["below_minimum"]:
                logger.warning(
                    f"SECURITY ALERT: hot wallet {entry['wallet_id']} balance {balance} "
                    f"below minimum {self.min_balance}"
                )
                await self.audit.log(
                    AuditAction.SECURITY_ALERT,
                    f"hot_wallet:{entry['wallet_id']}",
                    {
                        "alert": "low_balance",
                        "address": entry["address"],
                        "balance": format_amount(balance),
                        "minimum": format_amount(self.min_balance),
                    },
                    risk_level="high",
                )
        return entries
