# Application configuration
# Everything is read from the environment once, at import time.
import os


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "shopkart")

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Stripe hosted checkout
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")
CURRENCY = os.getenv("CURRENCY", "inr")
# comma separated ISO codes the hosted page collects a shipping address for
SHIPPING_COUNTRIES = [c.strip().upper() for c in os.getenv("SHIPPING_COUNTRIES", "IN").split(",") if c.strip()]

# Simulated payment methods
CARD_SUCCESS_RATE = float(os.getenv("CARD_SUCCESS_RATE", "0.9"))
UPI_SUCCESS_RATE = float(os.getenv("UPI_SUCCESS_RATE", "0.95"))

# Checkout policies
# "clamp": reduce each line to the stock left, "reject": fail the whole checkout
CHECKOUT_STOCK_POLICY = os.getenv("CHECKOUT_STOCK_POLICY", "clamp")
RESTOCK_ON_CANCEL = _flag("RESTOCK_ON_CANCEL")
CHECKOUT_LOCK_TTL_SECONDS = int(os.getenv("CHECKOUT_LOCK_TTL_SECONDS", "30"))
RECONCILE_GRACE_SECONDS = int(os.getenv("RECONCILE_GRACE_SECONDS", "300"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _flag("LOG_JSON")

PORT = int(os.getenv("PORT", "8000"))
