"""
Runtime configuration.

Everything is read from the environment once at import time.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = os.getenv("JWT_ALGO", "HS256")
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))

# ----------------------- Business constants -----------------------
TAX_RATE = 0.08
FLAT_SHIPPING_FEE = 5.99
FREE_SHIPPING_THRESHOLD = 50
LOW_STOCK_THRESHOLD = 5
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
REPORT_PERIODS = (7, 30, 90)
