"""
Sessions and Tokens

This package issues session tokens and tracks sessions and revoked tokens.
"""

from review_core.common.auth.jwt import (
    JWTConfig,
    TokenType,
    create_access_token,
    create_refresh_token,
    decode_token,
    token_expiry,
)
from review_core.common.auth.sessions import Session, SessionRegistry

__all__ = [
    'JWTConfig',
    'Session',
    'SessionRegistry',
    'TokenType',
    'create_access_token',
    'create_refresh_token',
    'decode_token',
    'token_expiry',
]
