"""Key custody: encrypted key material and transaction signing."""

from custody.keystore.encryption import decrypt_secret, encrypt_secret
from custody.keystore.store import KeyCustodyStore, SignedTransaction

__all__ = ["KeyCustodyStore", "SignedTransaction", "decrypt_secret", "encrypt_secret"]
