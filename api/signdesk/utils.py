
import base64, hashlib, json, secrets
from datetime import datetime, timezone
from itsdangerous import URLSafeTimedSerializer
from .config import SECRET_KEY

SLUG_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"

SIGNER_COLORS = [
    "#EF4444",  # red
    "#3B82F6",  # blue
    "#10B981",  # green
    "#F59E0B",  # amber
    "#8B5CF6",  # purple
    "#EC4899",  # pink
    "#06B6D4",  # cyan
    "#F97316",  # orange
]


def b64png_to_bytes(data_url: str) -> bytes:
    # expects "data:image/png;base64,....."
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    return base64.b64decode(data_url)


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC. Naive values are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix."""
    dt = as_utc(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_slug(length: int = 10) -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def make_signer_token() -> str:
    # 32 random bytes, URL-safe
    return secrets.token_urlsafe(32)


def next_signer_color(existing: list[str]) -> str:
    for color in SIGNER_COLORS:
        if color not in existing:
            return color
    return SIGNER_COLORS[len(existing) % len(SIGNER_COLORS)]


def make_download_token(payload: dict) -> str:
    s = URLSafeTimedSerializer(SECRET_KEY, salt="download")
    return s.dumps(payload)


def read_download_token(token: str, max_age: int | None = None) -> dict:
    s = URLSafeTimedSerializer(SECRET_KEY, salt="download")
    return s.loads(token, max_age=max_age)
