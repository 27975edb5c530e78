from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import List, Optional

import base58
import nacl.bindings
import nacl.signing

from .models import Challenge, DepositAsset


def public_key_b58(key: nacl.signing.SigningKey) -> str:
    return base58.b58encode(bytes(key.verify_key)).decode("ascii")


def secret_key_bytes(key: nacl.signing.SigningKey) -> List[int]:
    # Solana keypair files store seed || public key.
    return list(bytes(key) + bytes(key.verify_key))


def signing_key_from_secret(secret: List[int]) -> nacl.signing.SigningKey:
    raw = bytes(secret)
    if len(raw) not in (32, 64):
        raise ValueError(f"Unexpected secret key length {len(raw)}")
    return nacl.signing.SigningKey(raw[:32])


def validate_address(address: str) -> bool:
    """True for a base58 ed25519 public key that lies on the curve."""
    try:
        raw = base58.b58decode(address)
    except ValueError:
        return False
    if len(raw) != 32:
        return False
    return bool(nacl.bindings.crypto_core_ed25519_is_valid_point(raw))


def load_keypair_file(path: str) -> nacl.signing.SigningKey:
    """Reads a solana-keygen style JSON array, or our {"secretKey": [...]} object."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data["secretKey"]
    return signing_key_from_secret(data)


@dataclass(frozen=True)
class StoredKey:
    address: str
    session_key: Optional[int]
    # File mtime, seconds since the epoch.
    modified: float


class KeyRing:
    """Deposit keypairs on disk, one file per address, plus the optional treasury key.

    Files are only removed once the funds they hold have been sent back, so a
    late payment to an expired challenge can still be recovered.
    """

    def __init__(self, wallets_dir: str, treasury_keypair: str = "") -> None:
        self.wallets_dir = wallets_dir
        self._treasury_path = treasury_keypair
        self._treasury: Optional[nacl.signing.SigningKey] = None

    def _path(self, address: str) -> str:
        return os.path.join(self.wallets_dir, f"{address}.json")

    def generate(self, session_key: int) -> str:
        key = nacl.signing.SigningKey.generate()
        os.makedirs(self.wallets_dir, exist_ok=True)
        address = public_key_b58(key)
        with open(self._path(address), "w", encoding="utf-8") as f:
            json.dump(
                {
                    "secretKey": secret_key_bytes(key),
                    "publicKey": address,
                    "session": session_key,
                },
                f,
            )
        return address

    def load(self, address: str) -> nacl.signing.SigningKey:
        return load_keypair_file(self._path(address))

    def discard(self, address: str) -> None:
        try:
            os.remove(self._path(address))
        except FileNotFoundError:
            pass

    def stored(self) -> List[StoredKey]:
        """Deposit keys still on disk, oldest first."""
        if not os.path.isdir(self.wallets_dir):
            return []
        treasury = os.path.abspath(self._treasury_path) if self._treasury_path else None
        keys: List[StoredKey] = []
        for name in os.listdir(self.wallets_dir):
            address, ext = os.path.splitext(name)
            path = os.path.join(self.wallets_dir, name)
            if ext != ".json" or os.path.abspath(path) == treasury or not validate_address(address):
                continue
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            session = data.get("session") if isinstance(data, dict) else None
            keys.append(StoredKey(address, session, os.path.getmtime(path)))
        keys.sort(key=lambda k: k.modified)
        return keys

    @property
    def treasury(self) -> nacl.signing.SigningKey:
        if self._treasury is None:
            if not self._treasury_path:
                raise RuntimeError("Missing environment variable: TREASURY_KEYPAIR")
            self._treasury = load_keypair_file(self._treasury_path)
        return self._treasury

    def signer_for(self, challenge: Challenge) -> nacl.signing.SigningKey:
        if challenge.asset is DepositAsset.NATIVE:
            return self.load(challenge.deposit_address)
        return self.treasury
