
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./signdesk.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signdesk")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() == "true"
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signdesk")
REMINDER_SWEEP_SECONDS = int(os.getenv("REMINDER_SWEEP_SECONDS", "3600"))
CRON_SECRET = os.getenv("CRON_SECRET")
DOWNLOAD_LINK_TTL_SECONDS = int(os.getenv("DOWNLOAD_LINK_TTL_SECONDS", str(7 * 24 * 3600)))
# Claims older than this are taken over by the recovery sweep
FINALIZATION_CLAIM_TTL_SECONDS = int(os.getenv("FINALIZATION_CLAIM_TTL_SECONDS", "900"))
FINALIZATION_RECOVERY_SECONDS = int(os.getenv("FINALIZATION_RECOVERY_SECONDS", "300"))
# Resend allows 2 requests/sec
EMAIL_SEND_DELAY_MS = int(os.getenv("EMAIL_SEND_DELAY_MS", "600"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Externally provisioned signing chain (PEM). All or nothing.
ROOT_CA_CERT = os.getenv("SIGNDESK_ROOT_CA_CERT")
INTERMEDIATE_CERT = os.getenv("SIGNDESK_INTERMEDIATE_CERT")
SIGN_CERT = os.getenv("SIGNDESK_SIGN_CERT")
SIGN_KEY = os.getenv("SIGNDESK_SIGN_KEY")
SIGN_KEY_PASSWORD = os.getenv("SIGNDESK_SIGN_KEY_PASSWORD")

# Outbound mail. Without credentials messages are logged instead of sent.
SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
SMTP_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "20"))
EMAIL_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
EMAIL_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "SignDesk")
