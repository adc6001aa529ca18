import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


class TokenError(ValueError):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode(
        "utf-8"
    )


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def generate_access_token(user_id: int, email: str, name: str) -> str:
    return _serializer().dumps({"id": user_id, "email": email, "name": name})


def decode_access_token(token: str, max_age_secs: int | None = None) -> dict:
    if max_age_secs is None:
        max_age_secs = get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except SignatureExpired as exc:
        raise TokenError("Token expired") from exc
    except BadSignature as exc:
        raise TokenError("Invalid token") from exc

    if not isinstance(data, dict) or not isinstance(data.get("id"), int):
        raise TokenError("Invalid token")
    return data
