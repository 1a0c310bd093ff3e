from typing import Optional

import bcrypt
from itsdangerous import BadData, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthenticated


def _serializer(secret_key: Optional[str] = None) -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(secret_key or settings.secret_key, salt="access-token")


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    rounds = rounds or get_settings().bcrypt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode(
        "utf-8"
    )


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash or over-long input
        return False


def issue_token(user_id: int, role: str, secret_key: Optional[str] = None) -> str:
    return _serializer(secret_key).dumps({"id": user_id, "role": role})


def read_token(
    token: Optional[str],
    max_age_secs: Optional[int] = None,
    secret_key: Optional[str] = None,
) -> dict:
    """Return the token payload or raise ``Unauthenticated``."""
    if not token:
        raise Unauthenticated("Unauthorized")
    max_age = max_age_secs or get_settings().token_ttl_secs
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age)
    except BadData as exc:
        raise Unauthenticated("Invalid or expired token") from exc

    if not isinstance(data, dict) or not isinstance(data.get("id"), int):
        raise Unauthenticated("Invalid or expired token")
    return data


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
