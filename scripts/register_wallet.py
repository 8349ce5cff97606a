#!/usr/bin/env python3
"""Register admin wallets, hot wallets and deposit addresses."""

import asyncio
import sys
from decimal import Decimal

from dotenv import load_dotenv
load_dotenv()

from custody.chains import get_chain_spec
from custody.config import get_settings
from custody.keystore.store import KeyCustodyStore
from custody.ledger.database import get_db, init_db
from custody.ledger.repository import LedgerRepository

USAGE = """Usage:
  python register_wallet.py admin <chain> <network> <address>
  python register_wallet.py hot <chain> <network> <address> <encrypted_secret> [max_balance]
  python register_wallet.py deposit <user_id> <chain> <network> <index>
"""


async def register_admin(chain: str, network: str, address: str):
    spec = get_chain_spec(chain, network)
    async with get_db() as session:
        repo = LedgerRepository(session)
        existing = await repo.get_active_admin_wallet(spec.chain, spec.network, spec.native_asset)
        if existing:
            existing.active = False
            await session.flush()
            print(f"Deactivated previous admin wallet {existing.address}")
        wallet = await repo.create_admin_wallet(spec.chain, spec.network, spec.native_asset, address)
        print(f"Admin wallet {wallet.id}: {address} ({spec.chain}:{spec.network})")


async def register_hot(chain: str, network: str, address: str, secret: str, max_balance: str = "1000"):
    spec = get_chain_spec(chain, network)
    async with get_db() as session:
        wallet = await LedgerRepository(session).create_hot_wallet(
            chain=spec.chain,
            network=spec.network,
            asset=spec.native_asset,
            address=address,
            encrypted_secret=secret,
            max_balance=Decimal(max_balance),
        )
        print(f"Hot wallet {wallet.id}: {address} ({spec.chain}:{spec.network})")


async def register_deposit(user_id: str, chain: str, network: str, index: int):
    spec = get_chain_spec(chain, network)
    if not spec.is_evm:
        print("Deposit address derivation is only available for EVM chains")
        return
    address, path = KeyCustodyStore.from_settings(get_settings()).derive_deposit_address(index)
    async with get_db() as session:
        await LedgerRepository(session).create_deposit_address(
            user_id, spec.chain, spec.network, spec.native_asset, address, path, index
        )
    print(f"Deposit address for {user_id}: {address} ({path})")


async def run(args: list[str]):
    await init_db()
    kind = args[0]
    if kind == "admin" and len(args) == 4:
        await register_admin(*args[1:])
    elif kind == "hot" and len(args) in (5, 6):
        await register_hot(*args[1:])
    elif kind == "deposit" and len(args) == 5:
        await register_deposit(args[1], args[2], args[3], int(args[4]))
    else:
        print(USAGE)
        sys.exit(1)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)
    asyncio.run(run(sys.argv[1:]))
