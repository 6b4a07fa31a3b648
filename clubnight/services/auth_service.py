"""
Token verification for identities issued by the external identity provider.

The club backend never issues tokens. It verifies the provider's JWT and
reads the subject id plus profile claims from it.
"""

import os
import logging
from typing import Dict, Optional

from dotenv import load_dotenv
from jose import jwt, JWTError

load_dotenv()

logger = logging.getLogger(__name__)

AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_ALGORITHMS = [
    a.strip() for a in os.getenv("AUTH_JWT_ALGORITHMS", "HS256").split(",") if a.strip()
]
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE") or None
AUTH_JWT_ISSUER = os.getenv("AUTH_JWT_ISSUER") or None


def verify_token(token: str) -> Optional[Dict]:
    """
    Verify a bearer token and return its claims.

    Returns:
        Decoded claims, or None if the token is invalid, expired or has no subject
    """
    if not token or not AUTH_JWT_SECRET:
        return None
    try:
        payload = jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=AUTH_JWT_ALGORITHMS,
            audience=AUTH_JWT_AUDIENCE,
            issuer=AUTH_JWT_ISSUER,
            options={"verify_aud": AUTH_JWT_AUDIENCE is not None},
        )
    except JWTError as e:
        logger.debug(f"Token verification failed: {e}")
        return None
    if not payload.get("sub"):
        return None
    return payload


def identity_from_claims(payload: Dict) -> Dict:
    """Map verified claims to the (subject, email, name, avatar_url) identity tuple."""
    email = payload.get("email") or ""
    return {
        "subject": payload["sub"],
        "email": email,
        "name": payload.get("name") or payload.get("nickname") or email,
        "avatar_url": payload.get("picture"),
    }
