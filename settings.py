import os

from dotenv import load_dotenv
load_dotenv()


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_TOKEN_EXPIRE_MINUTES = _int("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
VERSION = "1.0.0"
PORT = _int("PORT", 5000)

FRONTEND_URL = os.getenv("FRONTEND_URL")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "https://artplazza.netlify.app,http://localhost:3000").split(",")
    if o.strip()
]
ALLOWED_ORIGINS = CORS_ORIGINS + ([FRONTEND_URL] if FRONTEND_URL else [])

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

# Storefront client
API_URL = os.getenv("API_URL", "http://localhost:5000/api")
PRODUCT_FETCH_TIMEOUT = _float("PRODUCT_FETCH_TIMEOUT", 3.0)

CATEGORY_CACHE_TTL = _float("CATEGORY_CACHE_TTL", 5 * 60)
CATEGORY_CACHE_MAX_ENTRIES = _int("CATEGORY_CACHE_MAX_ENTRIES", 256)

# Checkout pricing
TAX_RATE = _float("TAX_RATE", 0.18)
FREE_SHIPPING_THRESHOLD = _float("FREE_SHIPPING_THRESHOLD", 499)
SHIPPING_FEE = _float("SHIPPING_FEE", 49)


def is_development() -> bool:
    return ENVIRONMENT.lower() == "development"
