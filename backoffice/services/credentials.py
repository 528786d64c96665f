"""
Credential encryption/decryption and provider credential access.
Stored credentials (provider_credentials table) win over environment settings.
"""
import json
import base64
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.models import ProviderCredential

logger = logging.getLogger(__name__)

ERP_PROVIDER = "erp"
B2B_PROVIDER = "specialized_b2b"


def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY"""
    key_str = settings.ENCRYPTION_KEY
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)

def encrypt_token(token: str) -> str:
    """Encrypt a token"""
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()

def decrypt_token(encrypted: str) -> str:
    """Decrypt a token"""
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


def get_provider_credentials(db: Session, provider_id: str) -> dict[str, Any] | None:
    """Return decrypted provider credentials dict for the given provider, or None."""
    cred = (
        db.query(ProviderCredential)
        .filter(ProviderCredential.provider_id == provider_id)
        .first()
    )
    if not cred or not cred.value_encrypted:
        return None
    try:
        dec = decrypt_token(cred.value_encrypted)
    except InvalidToken:
        logger.warning("Stored credentials for %s cannot be decrypted with the current ENCRYPTION_KEY", provider_id)
        return None
    if dec.strip().startswith("{"):
        try:
            return json.loads(dec)
        except ValueError:
            logger.warning("Stored credentials for %s are not valid JSON", provider_id)
            return None
    return {"apiKey": dec}


def save_provider_credentials(db: Session, provider_id: str, data: dict[str, Any]) -> ProviderCredential:
    """Encrypt and upsert credentials for a provider. Caller commits."""
    encrypted = encrypt_token(json.dumps(data))
    cred = db.query(ProviderCredential).filter(ProviderCredential.provider_id == provider_id).first()
    if cred:
        cred.value_encrypted = encrypted
    else:
        cred = ProviderCredential(provider_id=provider_id, value_encrypted=encrypted)
        db.add(cred)
    return cred


def resolve_login(
    db: Optional[Session],
    provider_id: str,
    env_username: Optional[str],
    env_password: Optional[str],
) -> tuple[Optional[str], Optional[str]]:
    """(username, password) from stored credentials, else from environment. (None, None) if neither is complete."""
    if db is not None:
        data = get_provider_credentials(db, provider_id) or {}
        username = (data.get("username") or "").strip()
        password = data.get("password") or ""
        if username and password:
            return username, password
    username = (env_username or "").strip()
    password = env_password or ""
    if username and password:
        return username, password
    return None, None
