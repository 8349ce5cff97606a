"""Key custody store: decrypts key material and signs transactions.

Secrets are decrypted inside each signing call and never cached on the
store. Deposit-address keys are derived BIP44 from the encrypted deposit
seed; hot wallet secrets are stored encrypted per wallet.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from bip_utils import Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from eth_account import Account
from eth_utils import to_checksum_address
from xrpl.models.transactions import Memo, Payment
from xrpl.transaction import sign as xrpl_sign
from xrpl.wallet import Wallet

from custody.errors import KeyNotFoundError
from custody.keystore.encryption import decrypt_secret

logger = logging.getLogger(__name__)


@dataclass
class SignedTransaction:
    """Serialized signed transaction ready for broadcast."""

    raw: str
    tx_hash: str


def _prefixed(value: Any) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def prepare_evm_transaction(unsigned_tx: dict[str, Any]) -> dict[str, Any]:
    """Convert a stored unsigned tx (hex quantities) to the dict eth-account signs."""
    return {
        "to": to_checksum_address(unsigned_tx["to"]),
        "value": _as_int(unsigned_tx["value"]),
        "gas": _as_int(unsigned_tx["gas"]),
        "gasPrice": _as_int(unsigned_tx["gasPrice"]),
        "nonce": _as_int(unsigned_tx["nonce"]),
        "chainId": _as_int(unsigned_tx["chainId"]),
    }


def memo_to_hex(memo: str) -> str:
    return memo.encode("utf-8").hex().upper()


class KeyCustodyStore:
    """Signs EVM and XRP transactions with encrypted key material."""

    def __init__(self, master_password: Optional[str], deposit_seed_encrypted: Optional[str] = None):
        self._master_password = master_password or ""
        self._deposit_seed_encrypted = deposit_seed_encrypted

    @classmethod
    def from_settings(cls, settings) -> "KeyCustodyStore":
        return cls(settings.wallet_master_password, settings.deposit_seed_encrypted)

    @staticmethod
    def deposit_derivation_path(index: int) -> str:
        return f"m/44'/60'/0'/0/{index}"

    def _deposit_node(self, index: int):
        if not self._deposit_seed_encrypted:
            raise KeyNotFoundError("No deposit seed configured")
        mnemonic = decrypt_secret(self._deposit_seed_encrypted, self._master_password)
        seed_bytes = Bip39SeedGenerator(mnemonic).Generate()
        bip44 = Bip44.FromSeed(seed_bytes, Bip44Coins.ETHEREUM)
        return bip44.Purpose().Coin().Account(0).Change(Bip44Changes.CHAIN_EXT).AddressIndex(index)

    def derive_deposit_address(self, index: int) -> tuple[str, str]:
        """Address and derivation path for a deposit index."""
        node = self._deposit_node(index)
        return node.PublicKey().ToAddress(), self.deposit_derivation_path(index)

    def _deposit_private_key(self, index: Optional[int], expected_address: Optional[str]) -> str:
        if index is None:
            raise KeyNotFoundError(f"No derivation index for {expected_address}")
        node = self._deposit_node(index)
        if expected_address and node.PublicKey().ToAddress().lower() != expected_address.lower():
            raise KeyNotFoundError(f"Derived key does not control {expected_address}")
        return node.PrivateKey().Raw().ToHex()

    def sign_evm(
        self,
        unsigned_tx: dict[str, Any],
        *,
        derivation_index: Optional[int] = None,
        encrypted_secret: Optional[str] = None,
        expected_address: Optional[str] = None,
    ) -> SignedTransaction:
        """Sign an EVM transfer with a deposit key or an encrypted hot wallet key.

        Raises:
            KeyNotFoundError: no key material controls the sending address
        """
        if encrypted_secret:
            private_key = decrypt_secret(encrypted_secret, self._master_password)
        else:
            private_key = self._deposit_private_key(derivation_index, expected_address)

        account = Account.from_key(private_key)
        if expected_address and account.address.lower() != expected_address.lower():
            raise KeyNotFoundError(f"Key does not control {expected_address}")

        signed = account.sign_transaction(prepare_evm_transaction(unsigned_tx))
        return SignedTransaction(raw=_prefixed(signed.raw_transaction), tx_hash=_prefixed(signed.hash))

    def sign_xrp_payment(
        self,
        encrypted_secret: str,
        *,
        destination: str,
        amount_drops: int,
        fee_drops: int,
        sequence: int,
        destination_tag: Optional[int] = None,
        memo: Optional[str] = None,
        expected_address: Optional[str] = None,
    ) -> SignedTransaction:
        """Build and sign an XRP Payment from a hot wallet seed."""
        seed = decrypt_secret(encrypted_secret, self._master_password)
        wallet = Wallet.from_seed(seed)
        if expected_address and wallet.classic_address != expected_address:
            raise KeyNotFoundError(f"Seed does not control {expected_address}")

        memos = [Memo(memo_data=memo_to_hex(memo))] if memo else None
        payment = Payment(
            account=wallet.classic_address,
            destination=destination,
            amount=str(amount_drops),
            fee=str(fee_drops),
            sequence=sequence,
            destination_tag=destination_tag,
            memos=memos,
        )
        signed = xrpl_sign(payment, wallet)
        return SignedTransaction(raw=signed.blob(), tx_hash=signed.get_hash())
