"""
Security helpers: token verification for realtime connections.
"""

from shared.security.auth import TokenError, verify_jwt, user_id_from_claims

__all__ = ["TokenError", "verify_jwt", "user_id_from_claims"]
