"""
Account → brand + SmartLead credential resolution.

The webhook URL carries the upstream email-account id; api_settings maps it
to a brand and the stored (lightly obfuscated) SmartLead API key.
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from app.config import ENCRYPTION_SALT
from app.models.brand import ApiSetting

logger = logging.getLogger('services.credentials')

_BASE64_RE = re.compile(r'^[A-Za-z0-9+/]+={0,2}$')
_NULLISH = {'', 'null', 'none'}


@dataclass(frozen=True)
class ResolvedAccount:
    account_id: str
    brand_id: int
    api_key: Optional[str]


def decrypt_api_key(stored: Optional[str], salt: str = ENCRYPTION_SALT) -> str:
    """
    Reverse the settings-page encoding: base64(salt + key).

    Values that are not base64 are returned as-is (keys saved as plain text).
    """
    if not stored or stored.strip().lower() in _NULLISH:
        return ''
    stored = stored.strip()
    if not _BASE64_RE.match(stored) or len(stored) % 4:
        return stored
    try:
        decoded = base64.b64decode(stored, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        return stored
    if salt and salt in decoded:
        return decoded.replace(salt, '')
    return decoded


def resolve_account(session, account_id: str, fallback_key: Optional[str] = None) -> Optional[ResolvedAccount]:
    """
    Look up the brand and credential for an upstream account.

    Returns None when the account is unknown (its leads cannot be attributed).
    When the stored key is missing the event's own `secret_key` is used; if
    that is missing too, api_key is None and enrichment is skipped.
    """
    setting = session.execute(
        select(ApiSetting).where(ApiSetting.account_id == str(account_id))
    ).scalar_one_or_none()
    if setting is None:
        logger.error("No api_settings for account %s", account_id, extra={'account_id': account_id})
        return None

    api_key = decrypt_api_key(setting.encrypted_api_key) or (fallback_key or None)
    if not api_key:
        logger.warning("No SmartLead credential for account %s — enrichment disabled", account_id,
                       extra={'account_id': account_id})
    return ResolvedAccount(account_id=str(account_id), brand_id=setting.brand_id, api_key=api_key)
