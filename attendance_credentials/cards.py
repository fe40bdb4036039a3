"""NFC card UID helpers"""

import re

from .errors import InvalidCardUid

_UID_PATTERN = re.compile(r"^[0-9A-F]{8,16}$")


def normalize_card_uid(uid: str) -> str:
    """Upper-case a card UID and check it is 8-16 hex characters"""
    normalized = (uid or "").strip().upper()
    if not _UID_PATTERN.match(normalized):
        raise InvalidCardUid(f"Invalid NFC UID format: {uid!r}", card_uid=uid)
    return normalized


def detect_card_type(uid: str) -> str:
    # Based on UID length and manufacturer prefix only
    if len(uid) == 14 and uid.startswith("04"):
        return "MIFARE Classic"
    if len(uid) == 8:
        return "MIFARE Ultralight"
    if len(uid) == 16:
        return "MIFARE DESFire"
    return "Unknown"
