"""Caller-supplied analysis credentials, encrypted at rest per run.

Credentials are sealed with AES-256-GCM. The key is the SHA-256 digest of
``CC_DATABASE_ENCRYPTION_KEY`` so any passphrase length works; ``key_id``
records which configured key sealed a row.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from claimcheck.services.models import KeySourceAttachResult
from claimcheck.services.repository import KeySourceRecord, PostgresRepository

logger = logging.getLogger(__name__)

_IV_BYTES = 12
_TAG_BYTES = 16


class KeySourceError(Exception):
    """Base key-source error."""


class KeySourceConfigurationError(KeySourceError):
    """Raised when no encryption key is configured."""


class ExpiredKeySourceError(KeySourceError):
    """Raised when a run's credential outlived its TTL before the worker used it."""


class InvalidKeySourceError(KeySourceError):
    """Raised when a stored credential cannot be decrypted with the configured key."""


@dataclass(slots=True)
class EncryptedCredential:
    ciphertext: str
    iv: str
    auth_tag: str
    key_id: str


def _aesgcm(key_material: str | None) -> AESGCM:
    if not key_material:
        raise KeySourceConfigurationError("CC_DATABASE_ENCRYPTION_KEY is required to store caller credentials")
    return AESGCM(hashlib.sha256(key_material.encode("utf-8")).digest())


def encrypt_credential(api_key: str, *, key_material: str | None, key_id: str) -> EncryptedCredential:
    iv = os.urandom(_IV_BYTES)
    sealed = _aesgcm(key_material).encrypt(iv, api_key.encode("utf-8"), None)
    ciphertext, auth_tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
    return EncryptedCredential(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
        auth_tag=base64.b64encode(auth_tag).decode("ascii"),
        key_id=key_id,
    )


def decrypt_credential(source: KeySourceRecord | EncryptedCredential, *, key_material: str | None, key_id: str) -> str:
    if source.key_id != key_id:
        raise InvalidKeySourceError(f"credential sealed with unknown key_id={source.key_id}")
    aesgcm = _aesgcm(key_material)
    try:
        iv = base64.b64decode(source.iv, validate=True)
        sealed = base64.b64decode(source.ciphertext, validate=True) + base64.b64decode(source.auth_tag, validate=True)
        return aesgcm.decrypt(iv, sealed, None).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        raise InvalidKeySourceError("credential could not be decrypted") from exc


async def attach_key_source(
    repository: PostgresRepository,
    run_id: str,
    credential: EncryptedCredential,
    *,
    ttl_seconds: int,
    now: datetime | None = None,
) -> KeySourceAttachResult:
    """Store a credential for a PENDING run. The first stored credential wins."""
    expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=max(1, ttl_seconds))
    result = await repository.insert_key_source(
        run_id,
        ciphertext=credential.ciphertext,
        iv=credential.iv,
        auth_tag=credential.auth_tag,
        key_id=credential.key_id,
        expires_at=expires_at,
    )
    if result is not KeySourceAttachResult.ATTACHED:
        logger.info("key source not attached run_id=%s result=%s", run_id, result.value)
    return result


async def resolve_run_credential(
    repository: PostgresRepository,
    run_id: str,
    *,
    key_material: str | None,
    key_id: str,
    now: datetime | None = None,
) -> str | None:
    """Return the caller's credential for a run, or None to use the server's own."""
    source = await repository.get_key_source(run_id)
    if source is None:
        return None
    if source.expires_at <= (now or datetime.now(timezone.utc)):
        raise ExpiredKeySourceError(f"credential for run {run_id} expired at {source.expires_at.isoformat()}")
    return decrypt_credential(source, key_material=key_material, key_id=key_id)
