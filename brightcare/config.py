import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./brightcare.db")

# Firebase Configuration (ID token audience for the HTTP API)
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

# Cloudflare R2 Configuration (conversation attachments)
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "brightcare")
# Public bucket domain; when unset, download references are presigned URLs
R2_PUBLIC_BASE_URL = os.getenv("R2_PUBLIC_BASE_URL")
DOWNLOAD_URL_EXPIRATION = int(os.getenv("DOWNLOAD_URL_EXPIRATION", str(7 * 24 * 3600)))

# Attachment limits
MAX_ATTACHMENT_SIZE_BYTES = int(os.getenv("MAX_ATTACHMENT_SIZE_BYTES", str(50 * 1024 * 1024)))
# 0 emits a progress record on every transport callback
UPLOAD_PROGRESS_MIN_INTERVAL = float(os.getenv("UPLOAD_PROGRESS_MIN_INTERVAL", "0"))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "5000"))

# Gmail OAuth2 Configuration (primary OTP delivery)
GMAIL_CLIENT_ID = os.getenv("GMAIL_CLIENT_ID")
GMAIL_CLIENT_SECRET = os.getenv("GMAIL_CLIENT_SECRET")
GMAIL_REFRESH_TOKEN = os.getenv("GMAIL_REFRESH_TOKEN")
GMAIL_USER_EMAIL = os.getenv("GMAIL_USER_EMAIL")

# SMTP Configuration (fallback OTP delivery)
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "465"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")

# SMTP Encryption Key (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
SMTP_ENCRYPTION_KEY = os.getenv("SMTP_ENCRYPTION_KEY")

# OTP email settings
OTP_APP_NAME = os.getenv("OTP_APP_NAME", "BrightCare Patient")
OTP_EXPIRY_MINUTES = int(os.getenv("OTP_EXPIRY_MINUTES", "10"))
OTP_TOKEN_TIMEOUT_SECONDS = float(os.getenv("OTP_TOKEN_TIMEOUT_SECONDS", "10"))
OTP_SEND_TIMEOUT_SECONDS = float(os.getenv("OTP_SEND_TIMEOUT_SECONDS", "30"))

# OTP rate limits (fixed windows; REDIS_URL shares counts across workers)
REDIS_URL = os.getenv("REDIS_URL")
OTP_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("OTP_RATE_LIMIT_WINDOW_SECONDS", "3600"))
OTP_RATE_LIMIT_PER_IP = int(os.getenv("OTP_RATE_LIMIT_PER_IP", "10"))
OTP_RATE_LIMIT_PER_EMAIL = int(os.getenv("OTP_RATE_LIMIT_PER_EMAIL", "5"))
