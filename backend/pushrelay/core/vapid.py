"""
VAPID key management: generation, validation, persistence and the 90-day
rotation schedule. The active key set lives in a ``VapidKeyring`` that the
transport reads on every send.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from datetime import datetime, timedelta
from typing import Optional

from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from py_vapid import Vapid
from sqlalchemy.orm import Session

from ..config import Settings
from ..models import VapidConfig
from .database import SessionLocal
from .transport import VapidCredentials, VapidKeyring

logger = logging.getLogger(__name__)

ROW_ID = "default"
ROTATION_CHECK_INTERVAL_SEC = 24 * 60 * 60


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _public_key_of(vapid: Vapid) -> str:
    return _b64url(vapid.public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint))


def generate_keys(subject: str) -> VapidCredentials:
    """New P-256 key pair, both halves as unpadded base64url."""
    vapid = Vapid()
    vapid.generate_keys()
    private_raw = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    return VapidCredentials(
        public_key=_public_key_of(vapid),
        private_key=_b64url(private_raw),
        subject=subject,
    )


def validate_keys(public_key: str, private_key: str) -> bool:
    """True when both keys decode and the public key belongs to the private one."""
    try:
        public_raw = _b64url_decode(public_key)
        if len(public_raw) != 65 or public_raw[0] != 0x04:
            return False
        # Same parser pywebpush applies to the private key on every send
        vapid = Vapid.from_string(private_key)
    except (binascii.Error, ValueError, TypeError) as exc:
        logger.debug(f"VAPID key validation failed: {exc}")
        return False
    return _public_key_of(vapid) == public_key


def get_current_keys(db: Session) -> Optional[VapidConfig]:
    return db.query(VapidConfig).filter(VapidConfig.id == ROW_ID).first()


def _to_credentials(row: VapidConfig) -> VapidCredentials:
    return VapidCredentials(public_key=row.public_key, private_key=row.private_key, subject=row.subject)


def save_keys(db: Session, credentials: VapidCredentials, now: Optional[datetime] = None) -> VapidConfig:
    now = now or datetime.utcnow()
    row = get_current_keys(db)
    if row is None:
        row = VapidConfig(id=ROW_ID, created_at=now)
        db.add(row)
    row.public_key = credentials.public_key
    row.private_key = credentials.private_key
    row.subject = credentials.subject
    row.updated_at = now
    db.commit()
    db.refresh(row)
    return row


def initialize(db: Session, settings: Settings, keyring: VapidKeyring) -> VapidCredentials:
    """
    Load the key set into the keyring.

    Keys from settings win, then the persisted row; otherwise a fresh pair is
    generated and stored.
    """
    if settings.vapid_public_key and settings.vapid_private_key:
        creds = VapidCredentials(
            public_key=settings.vapid_public_key,
            private_key=settings.vapid_private_key,
            subject=settings.vapid_subject,
        )
        if not validate_keys(creds.public_key, creds.private_key):
            logger.warning("Configured VAPID keys do not form a valid pair")
        keyring.rotate(creds)
        return creds

    row = get_current_keys(db)
    if row is not None:
        creds = _to_credentials(row)
    else:
        creds = generate_keys(settings.vapid_subject)
        save_keys(db, creds)
        logger.info("Generated new VAPID key pair")

    keyring.rotate(creds)
    return creds


def next_rotation_at(row: VapidConfig, rotation_days: int = 90) -> datetime:
    return (row.updated_at or row.created_at) + timedelta(days=rotation_days)


def needs_rotation(row: Optional[VapidConfig], rotation_days: int = 90, now: Optional[datetime] = None) -> bool:
    if row is None:
        return False
    now = now or datetime.utcnow()
    return now >= next_rotation_at(row, rotation_days)


def rotate_keys(
    db: Session,
    keyring: VapidKeyring,
    subject: Optional[str] = None,
    now: Optional[datetime] = None,
) -> VapidCredentials:
    """Generate, persist and activate a new key pair. Existing subscriptions
    bound to the old public key will need to re-subscribe."""
    row = get_current_keys(db)
    subject = subject or (row.subject if row else None)
    if not subject:
        raise ValueError("A VAPID subject is required to rotate keys")

    creds = generate_keys(subject)
    save_keys(db, creds, now=now)
    keyring.rotate(creds)
    logger.warning("VAPID keys rotated; clients must re-subscribe with the new public key")
    return creds


async def vapid_rotation_loop(settings: Settings, keyring: VapidKeyring) -> None:
    """Once a day, rotate persisted keys that are older than the rotation period."""
    while True:
        db = SessionLocal()
        try:
            if not settings.vapid_private_key and needs_rotation(get_current_keys(db), settings.vapid_rotation_days):
                rotate_keys(db, keyring)
        except Exception as exc:
            logger.error(f"VAPID rotation check failed: {exc}")
        finally:
            db.close()

        await asyncio.sleep(ROTATION_CHECK_INTERVAL_SEC)
