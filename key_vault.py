"""AES-256-GCM sealed API key material."""

from __future__ import annotations

import argparse
import base64
import binascii
import logging
import os
import sys

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import CredentialDecryptError

log = logging.getLogger("model_gateway")

SEALED_PREFIX = "enc:"
_NONCE_BYTES = 12


def parse_vault_key(key_material: str) -> bytes:
    """
    Decode GATEWAY_VAULT_KEY: 64 hex chars, or base64 of exactly 32 bytes.

    Raises ValueError on anything else.
    """
    s = (key_material or "").strip()
    if len(s) == 64:
        try:
            return bytes.fromhex(s)
        except ValueError:
            pass
    try:
        key = base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("vault key must be 64 hex chars or base64 of 32 bytes") from None
    if len(key) != 32:
        raise ValueError("vault key must decode to 32 bytes")
    return key


def is_sealed(value: str | None) -> bool:
    return bool(value) and value.startswith(SEALED_PREFIX)


class KeyVault:
    """Opens `enc:` values; everything else is passed through as plaintext."""

    def __init__(self, key_material: str = "") -> None:
        self._aesgcm: AESGCM | None = None
        self._key_error = ""
        if key_material:
            try:
                self._aesgcm = AESGCM(parse_vault_key(key_material))
            except ValueError as e:
                self._key_error = str(e)
                log.error("GATEWAY_VAULT_KEY is unusable: %s", e)

    def seal(self, plaintext: str) -> str:
        if self._aesgcm is None:
            raise CredentialDecryptError(
                "Vault key not configured", model="", provider=""
            )
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return SEALED_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def reveal(self, value: str, *, model: str = "", provider: str = "") -> str:
        """Plaintext of a stored key. Raises CredentialDecryptError for unopenable values."""
        if not is_sealed(value):
            return value
        if self._aesgcm is None:
            reason = self._key_error or "GATEWAY_VAULT_KEY is not set"
            raise CredentialDecryptError(
                f"Cannot open sealed key for provider: {provider} ({reason})", model, provider
            )
        try:
            blob = base64.b64decode(value[len(SEALED_PREFIX):], validate=True)
        except (binascii.Error, ValueError):
            raise CredentialDecryptError(
                f"Sealed key for provider: {provider} is not valid base64", model, provider
            ) from None
        if len(blob) <= _NONCE_BYTES:
            raise CredentialDecryptError(
                f"Sealed key for provider: {provider} is truncated", model, provider
            )
        try:
            plaintext = self._aesgcm.decrypt(blob[:_NONCE_BYTES], blob[_NONCE_BYTES:], None)
        except InvalidTag:
            raise CredentialDecryptError(
                f"Sealed key for provider: {provider} failed authentication", model, provider
            ) from None
        return plaintext.decode("utf-8")


def generate_vault_key() -> str:
    return os.urandom(32).hex()


def main(argv: list[str] | None = None, stdin=None) -> int:
    """Operator helper: `python key_vault.py genkey`, or `seal` with the key read from stdin."""
    parser = argparse.ArgumentParser(prog="key_vault", description="Produce enc: values for the catalog.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("genkey", help="Print a fresh GATEWAY_VAULT_KEY (64 hex chars).")
    seal = sub.add_parser("seal", help="Seal one provider API key read from stdin.")
    seal.add_argument(
        "--vault-key-env",
        default="GATEWAY_VAULT_KEY",
        help="Environment variable holding the vault key.",
    )
    args = parser.parse_args(argv)

    if args.command == "genkey":
        print(generate_vault_key())
        return 0

    key_material = os.environ.get(args.vault_key_env, "")
    try:
        parse_vault_key(key_material)
    except ValueError as e:
        print(f"{args.vault_key_env}: {e}", file=sys.stderr)
        return 2
    plaintext = (stdin or sys.stdin).read().strip()
    if not plaintext:
        print("no API key on stdin", file=sys.stderr)
        return 2
    print(KeyVault(key_material).seal(plaintext))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
