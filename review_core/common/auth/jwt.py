"""
JWT Token Module

This module issues the access and refresh tokens handed out with learner
sessions and reads their expiry claims, which the session registry uses to
size revocation entries.
"""

import datetime
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

# Using PyJWT for JWT operations
import jwt

from review_core.common.config import SessionSettings
from review_core.common.exceptions import InvalidTokenError


class TokenType(enum.Enum):
    """Types of JWT tokens issued with a session."""

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class JWTConfig:
    """
    Configuration for JWT tokens.

    Attributes:
        secret_key: Secret key used for signing tokens
        algorithm: Algorithm used for signing tokens
        access_token_expires: Access token expiration time in minutes
        refresh_token_expires: Refresh token expiration time in days
        token_issuer: Issuer of the tokens
    """
    secret_key: str
    algorithm: str = "HS256"
    access_token_expires: int = 60  # minutes
    refresh_token_expires: int = 7  # days
    token_issuer: str = "review-core"

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "JWTConfig":
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.algorithm,
            access_token_expires=settings.access_token_minutes,
            refresh_token_expires=settings.refresh_token_days
        )


def _encode(
    config: JWTConfig,
    subject: Union[str, int],
    token_type: TokenType,
    expires_delta: datetime.timedelta,
    additional_claims: Optional[Dict[str, Any]],
    now: Optional[datetime.datetime]
) -> str:
    issued_at = now or datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "sub": str(subject),
        "exp": issued_at + expires_delta,
        "iat": issued_at,
        "iss": config.token_issuer,
        "type": token_type.value
    }
    if additional_claims:
        payload.update(additional_claims)
    return jwt.encode(payload, config.secret_key, algorithm=config.algorithm)


def create_access_token(
    config: JWTConfig,
    subject: Union[str, int],
    additional_claims: Optional[Dict[str, Any]] = None,
    expires_in: Optional[int] = None,
    now: Optional[datetime.datetime] = None
) -> str:
    """
    Create a new JWT access token.

    Args:
        config: Signing configuration
        subject: The subject of the token (typically a user ID)
        additional_claims: Additional claims to include in the token
        expires_in: Token expiration time in minutes (overrides config)
        now: Issue time; defaults to the current time

    Returns:
        The JWT access token as a string
    """
    minutes = expires_in if expires_in is not None else config.access_token_expires
    return _encode(config, subject, TokenType.ACCESS, datetime.timedelta(minutes=minutes), additional_claims, now)


def create_refresh_token(
    config: JWTConfig,
    subject: Union[str, int],
    additional_claims: Optional[Dict[str, Any]] = None,
    expires_in: Optional[int] = None,
    now: Optional[datetime.datetime] = None
) -> str:
    """
    Create a new JWT refresh token.

    Args:
        config: Signing configuration
        subject: The subject of the token (typically a user ID)
        additional_claims: Additional claims to include in the token
        expires_in: Token expiration time in days (overrides config)
        now: Issue time; defaults to the current time

    Returns:
        The JWT refresh token as a string
    """
    days = expires_in if expires_in is not None else config.refresh_token_expires
    return _encode(config, subject, TokenType.REFRESH, datetime.timedelta(days=days), additional_claims, now)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode a JWT token without validation.

    Signature and expiry are not checked; the payload is only used for
    bookkeeping such as revocation lifetimes.

    Args:
        token: The JWT token to decode

    Returns:
        The decoded token payload

    Raises:
        InvalidTokenError: If the token is malformed
    """
    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.PyJWTError as e:
        raise InvalidTokenError(f"Invalid token format: {str(e)}")


def token_expiry(token: str) -> Optional[float]:
    """
    Expiry of a token as epoch seconds.

    Returns:
        The ``exp`` claim, or None when the token carries none

    Raises:
        InvalidTokenError: If the token is malformed
    """
    exp = decode_token(token).get("exp")
    return float(exp) if exp is not None else None
