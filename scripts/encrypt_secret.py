#!/usr/bin/env python3
"""Encrypt a seed phrase or private key with the master password.

Usage:
    python scripts/encrypt_secret.py            # prompts for secret
    python scripts/encrypt_secret.py --verify   # decrypts an existing blob

The master password is read from WALLET_MASTER_PASSWORD (or .env).
"""

import sys
from getpass import getpass

from dotenv import load_dotenv
load_dotenv()

from custody.config import get_settings
from custody.errors import CustodyError
from custody.keystore.encryption import decrypt_secret, encrypt_secret


def main() -> int:
    password = get_settings().wallet_master_password
    if not password:
        print("Error: WALLET_MASTER_PASSWORD not set")
        return 1

    try:
        if "--verify" in sys.argv:
            blob = getpass("Encrypted blob: ").strip()
            decrypt_secret(blob, password)
            print("OK: blob decrypts with the configured master password")
        else:
            secret = getpass("Secret (seed phrase, XRP seed or private key): ").strip()
            if not secret:
                print("Error: empty secret")
                return 1
            print(encrypt_secret(secret, password))
    except CustodyError as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
