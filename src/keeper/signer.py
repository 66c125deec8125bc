"""SealedSigner: the crank wallet, exposing only its public key and ``sign``.

The secret is parsed once at startup and held inside the instance. It is
never returned, logged, pickled, or included in ``repr``.
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import base58
import structlog
from solders.keypair import Keypair

from src.core.config import DatabaseConfig, SignerConfig
from src.keeper.exceptions import ConfigError, SigningError

logger = structlog.stdlib.get_logger()

SECRET_KEY_LEN = 64
# Solana packet limit for a serialized transaction
MAX_TRANSACTION_SIZE = 1232
_SIGNATURE_LEN = 64


def _decode_secret(raw: str) -> bytes:
    """Decode a base58 or JSON-array secret key into 64 raw bytes."""
    text = raw.strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError("CRANK_KEYPAIR is not a valid JSON byte array") from exc
        if (
            not isinstance(parsed, list)
            or len(parsed) != SECRET_KEY_LEN
            or not all(isinstance(b, int) and 0 <= b <= 255 for b in parsed)
        ):
            raise ConfigError(
                f"CRANK_KEYPAIR must be a {SECRET_KEY_LEN}-byte array"
            )
        return bytes(parsed)

    try:
        decoded = base58.b58decode(text)
    except ValueError as exc:
        raise ConfigError("CRANK_KEYPAIR is neither base58 nor a JSON byte array") from exc
    if len(decoded) != SECRET_KEY_LEN:
        raise ConfigError(
            f"CRANK_KEYPAIR decodes to {len(decoded)} bytes, expected {SECRET_KEY_LEN}. "
            "Was only the public key pasted?"
        )
    return decoded


def check_credential_separation(database: DatabaseConfig | None) -> None:
    """Refuse to start when the restricted and elevated database keys are equal.

    Either key being absent is allowed.
    """
    if database is None:
        return
    restricted = database.key.get_secret_value().strip()
    elevated = database.service_role_key.get_secret_value().strip()
    if restricted and elevated and restricted == elevated:
        raise ConfigError(
            "Keeper misconfiguration: SUPABASE_KEY must not equal "
            "SUPABASE_SERVICE_ROLE_KEY. Set SUPABASE_KEY to the anon key."
        )


class SealedSigner:
    """Signing handle for the crank wallet.

    Construct once per process via :meth:`load` and pass the instance to
    the services that need it.
    """

    __slots__ = ("__keypair", "_public_identity", "_audit")

    def __init__(self, keypair: Keypair, audit: bool = False) -> None:
        self.__keypair = keypair
        self._public_identity = str(keypair.pubkey())
        self._audit = audit

    @classmethod
    def load(
        cls,
        signer: SignerConfig,
        database: DatabaseConfig | None = None,
    ) -> SealedSigner:
        """Parse the configured secret and seal it.

        Raises:
            ConfigError: Secret missing or malformed, embedded public key
                inconsistent with the seed, configured expected public key
                mismatched, or colliding database credentials.
        """
        check_credential_separation(database)

        raw = signer.crank_keypair.get_secret_value()
        if not raw.strip():
            raise ConfigError(
                "CRANK_KEYPAIR is required: a base58 secret key or a JSON array of 64 bytes"
            )

        secret = _decode_secret(raw)
        keypair = Keypair.from_seed(secret[:32])
        if bytes(keypair.pubkey()) != secret[32:]:
            raise ConfigError("CRANK_KEYPAIR public half does not match its seed")

        sealed = cls(keypair, audit=signer.audit_signing)
        if signer.expected_public_key:
            sealed.verify_identity(signer.expected_public_key)
        logger.info("signer_loaded", public_key=sealed.public_identity())
        return sealed

    def public_identity(self) -> str:
        """Base58 public key. Safe to log and display."""
        return self._public_identity

    def verify_identity(self, expected: str) -> None:
        if expected != self._public_identity:
            raise ConfigError(
                f"Signer public key mismatch: expected {expected}, "
                f"got {self._public_identity}"
            )

    def sign(self, transaction_bytes: bytes) -> bytes:
        """Sign a serialized message and return the single-signer wire form.

        Layout: ``[1] || signature (64 bytes) || message``.

        Raises:
            SigningError: Payload is not bytes, is empty, or exceeds the
                transaction size limit once signed.
        """
        if not isinstance(transaction_bytes, (bytes, bytearray)):
            raise SigningError(
                f"Expected bytes to sign, got {type(transaction_bytes).__name__}"
            )
        message = bytes(transaction_bytes)
        if not message:
            raise SigningError("Refusing to sign an empty payload")
        signed_len = 1 + _SIGNATURE_LEN + len(message)
        if signed_len > MAX_TRANSACTION_SIZE:
            raise SigningError(
                f"Signed transaction would be {signed_len} bytes, "
                f"limit is {MAX_TRANSACTION_SIZE}"
            )

        if self._audit:
            logger.debug("signing_payload", size=len(message))

        signature = self.__keypair.sign_message(message)
        return bytes([1]) + bytes(signature) + message

    def __repr__(self) -> str:
        return f"SealedSigner(public_key={self._public_identity!r})"

    def __reduce__(self) -> NoReturn:
        raise TypeError("SealedSigner cannot be serialized")

    def __copy__(self) -> NoReturn:
        raise TypeError("SealedSigner cannot be copied")

    def __deepcopy__(self, memo: dict[int, Any]) -> NoReturn:
        raise TypeError("SealedSigner cannot be copied")
