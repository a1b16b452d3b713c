import hashlib
import hmac
import json
import time
from urllib.parse import parse_qsl

from tgshop.errors import InvalidInitData
from tgshop.models import TelegramUser


def init_data_check_string(pairs: dict) -> str:
    return "\n".join(sorted(f"{k}={v}" for k, v in pairs.items() if k != "hash"))


def init_data_hash(pairs: dict, bot_token: str) -> str:
    # Mini App flavour: the secret is HMAC("WebAppData", token), not sha256(token)
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(secret_key, init_data_check_string(pairs).encode(), hashlib.sha256).hexdigest()


def validate_init_data(init_data_raw: str, bot_token: str, max_age: int = 0, now=None) -> TelegramUser:
    """
    Verify Telegram Mini App initData and return the user it was issued for.
    Raises InvalidInitData on any mismatch.
    """
    if not bot_token:
        raise InvalidInitData("Bot token is not configured")

    pairs = dict(parse_qsl(init_data_raw or "", keep_blank_values=True))
    check_hash = pairs.get("hash")
    if not check_hash:
        raise InvalidInitData("No hash found in initData")

    if not hmac.compare_digest(init_data_hash(pairs, bot_token), check_hash):
        raise InvalidInitData("Hash validation failed")

    if max_age:
        try:
            auth_date = int(pairs.get("auth_date", "0"))
        except ValueError:
            raise InvalidInitData("Invalid auth_date")
        if (now or time.time()) - auth_date > max_age:
            raise InvalidInitData("initData is expired")

    raw_user = pairs.get("user")
    if not raw_user:
        raise InvalidInitData("No user in initData")
    try:
        data = json.loads(raw_user)
        return TelegramUser(
            id=int(data["id"]),
            username=data.get("username"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
        )
    except (ValueError, KeyError, TypeError):
        raise InvalidInitData("Invalid user data in initData")
