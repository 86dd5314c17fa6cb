"""
Payment & Enrollment Service Configuration
Database, gateway keys and reconciliation settings
"""

import os

# MongoDB
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "atelier_db")
# Multi-document transactions need a replica set; standalone servers turn this off
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "true").lower() in ("true", "1", "yes")

# Auth (shared secret with the identity provider)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM = "HS256"

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
STRIPE_MIN_AMOUNT = 0.5  # USD

# Khalti
KHALTI_SECRET_KEY = os.getenv("KHALTI_SECRET_KEY", "")
KHALTI_BASE_URL = os.getenv("KHALTI_BASE_URL", "https://dev.khalti.com/api/v2")
KHALTI_EXCHANGE_RATE = float(os.getenv("KHALTI_EXCHANGE_RATE", "133"))  # USD -> NPR
KHALTI_MIN_AMOUNT_NPR = 10
KHALTI_TIMEOUT_SECONDS = 10.0

# Reconciliation
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd")
LOCAL_CURRENCY = "npr"
PAYMENT_TIMEOUT_MINUTES = int(os.getenv("PAYMENT_TIMEOUT_MINUTES", "30"))
PENDING_RETENTION_DAYS = int(os.getenv("PENDING_RETENTION_DAYS", "30"))
EXPIRY_SWEEP_SECONDS = int(os.getenv("EXPIRY_SWEEP_SECONDS", "300"))

# Rate limits (requests per window, window in seconds)
INITIATE_RATE_LIMIT = int(os.getenv("INITIATE_RATE_LIMIT", "5"))
VERIFY_RATE_LIMIT = int(os.getenv("VERIFY_RATE_LIMIT", "10"))
RATE_LIMIT_WINDOW = 60

BASE_URL = os.getenv("BASE_URL", "http://localhost:3000")  # frontend
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
