import jwt
from datetime import datetime, timedelta, timezone
import os
from dotenv import load_dotenv

load_dotenv()

JWT_SECRET = os.getenv("JWT_SECRET", "default_secret")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_IN_MINUTES = int(os.getenv("JWT_EXPIRES_IN_MINUTES", 60 * 24 * 7))


def create_access_token(user_id, role, expires_in_minutes=JWT_EXPIRES_IN_MINUTES, secret=None):
    """
    Generate a JWT access token for a user.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": str(user_id),
        "role": role,
        "exp": now + timedelta(minutes=expires_in_minutes),
        "iat": now
    }

    return jwt.encode(payload, secret or JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token, secret=None):
    """
    Verify and decode a JWT token.
    Returns payload dict if valid, or None if invalid/expired.
    """
    try:
        return jwt.decode(token, secret or JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
