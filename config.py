import os

# Environment
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", "60"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@marketplace.local")

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")

MARKETPLACE_URL = os.getenv("MARKETPLACE_URL", "http://localhost:3000")

# Login rate limiting (per-IP)
RATE_LIMIT_WINDOW_SEC = 60 * 15  # 15 minutes
RATE_LIMIT_MAX_ATTEMPTS = 20

# Cart
CART_TTL_DAYS = 30
MAX_ITEM_QUANTITY = 99

# Checkout pricing
FREE_SHIPPING_THRESHOLD = 999
FLAT_SHIPPING = 99
TAX_RATE = 0.18

# Orders / reviews
RETURN_WINDOW_DAYS = 30
REVIEW_FLAG_THRESHOLD = 5
