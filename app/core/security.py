import hashlib
import hmac
import secrets
from datetime import datetime

from jose import JWTError, jwt
from passlib.context import CryptContext


# One-time code hashing context
otp_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_code(code: str) -> str:
    """Hash a one-time code for storage."""
    return otp_context.hash(code)


def verify_code(code: str, code_hash: str) -> bool:
    """Verify a one-time code against its stored hash."""
    return otp_context.verify(code, code_hash)


def generate_otp(length: int = 6) -> str:
    """Generate a numeric one-time code of the given length."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def generate_redemption_token() -> str:
    """Generate an unguessable redemption token (256 bits)."""
    return secrets.token_urlsafe(32)


def create_access_token(claims: dict, expires_at: datetime, secret_key: str, algorithm: str) -> str:
    to_encode = claims.copy()
    to_encode.update({"exp": expires_at})
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def decode_token(token: str, secret_key: str, algorithm: str) -> dict | None:
    """Decode and verify a token signature.

    Expiry is checked by the caller against its own clock.
    """
    try:
        return jwt.decode(token, secret_key, algorithms=[algorithm], options={"verify_exp": False})
    except JWTError:
        return None


def mask_identifier(value: str, secret: str, length: int = 8) -> str:
    """Return a keyed, non-reversible short token for an identifier."""
    digest = hmac.new(secret.encode(), value.encode(), hashlib.sha256).hexdigest()
    return digest[:length]
