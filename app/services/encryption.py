import base64
import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings as core_settings


SECRET_PREFIX = "enc:v1:"
SALT_BYTES = 64
HASH_ITERATIONS = 100000
HASH_BYTES = 64


class EncryptionConfigError(RuntimeError):
    pass


def _get_fernet() -> Fernet:
    key = (core_settings.ENCRYPTION_KEY or "").strip()
    if not key:
        raise EncryptionConfigError("ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise EncryptionConfigError("ENCRYPTION_KEY must be a urlsafe base64-encoded 32-byte key") from exc


def encrypt(plaintext: str) -> str:
    value = plaintext or ""
    if not value:
        return ""
    if value.startswith(SECRET_PREFIX):
        return value
    token = _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")
    return f"{SECRET_PREFIX}{token}"


def decrypt(value: str | None) -> str:
    """Raises ValueError for a token that was tampered with or encrypted under another key."""
    raw = (value or "").strip()
    if not raw:
        return ""
    if not raw.startswith(SECRET_PREFIX):
        raise ValueError("value is not encrypted")

    token = raw[len(SECRET_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("invalid encrypted value") from exc


def mask_value(value: str | None) -> str:
    v = (value or "").strip()
    if not v:
        return ""
    if len(v) <= 8:
        return "****"
    return f"****{v[-4:]}"


def hash_value(data: str) -> str:
    salt = secrets.token_bytes(SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha512", (data or "").encode("utf-8"), salt, HASH_ITERATIONS, dklen=HASH_BYTES)
    return base64.b64encode(salt + digest).decode("ascii")


def verify_hash(data: str, hashed: str) -> bool:
    try:
        raw = base64.b64decode((hashed or "").encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError):
        return False
    if len(raw) != SALT_BYTES + HASH_BYTES:
        return False
    salt, expected = raw[:SALT_BYTES], raw[SALT_BYTES:]
    digest = hashlib.pbkdf2_hmac("sha512", (data or "").encode("utf-8"), salt, HASH_ITERATIONS, dklen=HASH_BYTES)
    return hmac.compare_digest(digest, expected)


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(max(int(length), 1))


def _signing_key() -> bytes:
    key = (core_settings.ENCRYPTION_KEY or "").strip()
    if not key:
        raise EncryptionConfigError("ENCRYPTION_KEY is not configured")
    return key.encode("utf-8")


def generate_signature(data: str) -> str:
    return hmac.new(_signing_key(), (data or "").encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(data: str, signature: str) -> bool:
    return hmac.compare_digest(generate_signature(data), (signature or "").strip().lower())
