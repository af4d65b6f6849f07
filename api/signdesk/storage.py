
import io
from datetime import timedelta
from minio import Minio
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=MINIO_SECURE,
)


def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)


def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
    ensure_bucket()
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)


def get_bytes(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()


def signed_get(key: str, ttl_seconds: int) -> str:
    return _client.presigned_get_object(MINIO_BUCKET, key, expires=timedelta(seconds=ttl_seconds))


def original_key(slug: str) -> str:
    return f"envelopes/{slug}/original.pdf"


def signed_key(slug: str) -> str:
    return f"envelopes/{slug}/signed.pdf"


def audit_trail_key(slug: str) -> str:
    return f"envelopes/{slug}/audit-trail.pdf"


def template_key(slug: str) -> str:
    return f"templates/{slug}/document.pdf"
