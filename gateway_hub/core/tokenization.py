"""
Payment-method tokenization.

Sensitive payment-method payloads are encrypted with AES-256-GCM and stored
in Redis under an opaque token id. Only masked data ever leaves the vault
in the clear.

Key rotation: add the current key to ``tokenization_retired_keys`` under
its id, then set a new ``tokenization_key``/``tokenization_key_id``. New
tokens use the new key; existing tokens keep decrypting with the retired
key until they expire.
"""
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import redis.asyncio as aioredis
import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from gateway_hub.config import Settings
from gateway_hub.core.errors import IntegrityError, NotFoundError, ValidationError
from gateway_hub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
TOKEN_PREFIX = "tok_"


class TokenKeyring:
    """Active encryption key plus retired keys kept for decryption."""

    def __init__(self, active_key_id: str, active_key: bytes, retired: Optional[Dict[str, bytes]] = None):
        if len(active_key) != 32:
            raise ValueError("Tokenization key must be 32 bytes")
        self.active_key_id = active_key_id
        self._keys: Dict[str, bytes] = dict(retired or {})
        self._keys[active_key_id] = active_key

    @property
    def active_key(self) -> bytes:
        return self._keys[self.active_key_id]

    def get(self, key_id: str) -> Optional[bytes]:
        return self._keys.get(key_id)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenKeyring":
        """
        Build the keyring from settings.

        Without a configured key, development and test environments get an
        ephemeral key; tokens issued with it become undecryptable once the
        process exits. Production refuses to start without a key.

        Raises:
            RuntimeError: If no key is configured in production
        """
        retired = {
            key_id: bytes.fromhex(hex_key)
            for key_id, hex_key in settings.tokenization_retired_keys.items()
        }
        if settings.tokenization_key:
            return cls(settings.tokenization_key_id, bytes.fromhex(settings.tokenization_key), retired)

        if settings.is_production:
            raise RuntimeError("TOKENIZATION_KEY must be configured in production")

        logger.warning(
            "tokenization_key_ephemeral",
            message="No tokenization key configured; generated a per-process key. "
            "Tokens will not survive a restart.",
            app_env=settings.app_env,
        )
        return cls(settings.tokenization_key_id, AESGCM.generate_key(bit_length=256), retired)


def mask_card_number(card_number: str) -> str:
    digits = "".join(ch for ch in card_number if ch.isdigit())
    return f"**** **** **** {digits[-4:]}"


def mask_cardholder_name(name: str) -> str:
    parts = name.split()
    if len(parts) < 2:
        return name
    return f"{parts[0][0]}. {parts[-1]}"


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}"


def mask_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Build the displayable view of a payment-method payload.

    Cards keep the last four digits, the card type, an ``MM/YY`` expiry and
    the holder as ``J. Doe``; wallets keep a masked email.
    """
    method_type = payload.get("type") or "card"
    masked: Dict[str, Any] = {"type": method_type}

    if method_type == "card":
        if payload.get("card_number"):
            masked["card_number"] = mask_card_number(str(payload["card_number"]))
        if payload.get("card_type"):
            masked["card_type"] = payload["card_type"]
        if payload.get("expiry_month") and payload.get("expiry_year"):
            month = int(payload["expiry_month"])
            year = int(payload["expiry_year"]) % 100
            masked["expiry"] = f"{month:02d}/{year:02d}"
        if payload.get("cardholder_name"):
            masked["cardholder_name"] = mask_cardholder_name(str(payload["cardholder_name"]))
    elif method_type == "paypal":
        if payload.get("paypal_email"):
            masked["paypal_email"] = mask_email(str(payload["paypal_email"]))

    return masked


class TokenizationService:
    """
    Vault for payment-method payloads.

    Each token is one Redis key ``token:{token_id}`` holding the
    ciphertext, nonce, tag, key id and masked view. The token id is bound as
    associated data, so a record copied under another id fails to decrypt.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        keyring: TokenKeyring,
        ttl_seconds: int = 365 * 24 * 3600,
    ):
        """
        Initialize tokenization service.

        Args:
            redis_client: Redis client with string responses
            keyring: Encryption keys
            ttl_seconds: Token lifetime
        """
        self.redis = redis_client
        self.keyring = keyring
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(token_id: str) -> str:
        return f"token:{token_id}"

    async def tokenize(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Encrypt and store a payment-method payload.

        Args:
            payload: Raw payment-method fields

        Returns:
            Dict[str, Any]: ``token_id`` and ``masked_data``

        Raises:
            ValidationError: If the payload is empty
        """
        if not payload:
            raise ValidationError("Payment method payload is required")

        token_id = f"{TOKEN_PREFIX}{uuid.uuid4().hex}"
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(dict(payload), separators=(",", ":")).encode("utf-8")
        sealed = AESGCM(self.keyring.active_key).encrypt(nonce, plaintext, token_id.encode("utf-8"))
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        created_at = datetime.now(timezone.utc)
        masked = mask_payload(payload)
        record = {
            "token_id": token_id,
            "key_id": self.keyring.active_key_id,
            "ciphertext": ciphertext.hex(),
            "iv": nonce.hex(),
            "tag": tag.hex(),
            "masked_data": masked,
            "created_at": created_at.isoformat(),
            "expires_at": (created_at + timedelta(seconds=self.ttl_seconds)).isoformat(),
        }
        await self.redis.set(self._key(token_id), json.dumps(record), ex=self.ttl_seconds)

        metrics.record_tokenization("tokenize", "success")
        logger.info("payment_method_tokenized", token_id=token_id, method_type=masked["type"])
        return {"token_id": token_id, "masked_data": masked}

    async def detokenize(self, token_id: str) -> Dict[str, Any]:
        """
        Decrypt a stored payload.

        Raises:
            NotFoundError: If the token does not exist or has expired
            IntegrityError: If authentication fails (tampering or wrong key)
        """
        raw = await self.redis.get(self._key(token_id))
        if raw is None:
            metrics.record_tokenization("detokenize", "not_found")
            raise NotFoundError("Token not found or expired", details={"token_id": token_id})

        record = json.loads(raw)
        key = self.keyring.get(record.get("key_id", ""))
        if key is None:
            metrics.record_tokenization("detokenize", "integrity_error")
            logger.error("token_key_unknown", token_id=token_id, key_id=record.get("key_id"))
            raise IntegrityError("Token was encrypted with an unknown key", details={"token_id": token_id})

        try:
            sealed = bytes.fromhex(record["ciphertext"]) + bytes.fromhex(record["tag"])
            plaintext = AESGCM(key).decrypt(
                bytes.fromhex(record["iv"]), sealed, token_id.encode("utf-8")
            )
        except (InvalidTag, ValueError, KeyError) as e:
            metrics.record_tokenization("detokenize", "integrity_error")
            logger.error("token_integrity_check_failed", token_id=token_id, error_type=type(e).__name__)
            raise IntegrityError("Token failed integrity verification", details={"token_id": token_id}) from e

        metrics.record_tokenization("detokenize", "success")
        return json.loads(plaintext)

    async def get_masked(self, token_id: str) -> Dict[str, Any]:
        """Masked view of a token without decrypting it."""
        raw = await self.redis.get(self._key(token_id))
        if raw is None:
            raise NotFoundError("Token not found or expired", details={"token_id": token_id})
        return json.loads(raw)["masked_data"]

    async def delete_token(self, token_id: str) -> None:
        """Delete a token. Deleting a missing token is not an error."""
        await self.redis.delete(self._key(token_id))
        metrics.record_tokenization("delete", "success")
        logger.info("payment_method_token_deleted", token_id=token_id)
