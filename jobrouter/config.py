import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./jobrouter.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Dispatch offers
DISPATCH_TTL_HOURS = int(os.getenv("DISPATCH_TTL_HOURS", "24"))
MAX_PENDING_DISPATCHES = int(os.getenv("MAX_PENDING_DISPATCHES", "5"))
# Raw offer tokens are echoed back to the router only outside production
ALLOW_DEV_TOKEN_ECHO = (
    os.getenv("ALLOW_DEV_TOKEN_ECHO", "false").lower() == "true" and ENVIRONMENT != "production"
)

# Job lifecycle windows
COMPLETION_WINDOW_DAYS = int(os.getenv("COMPLETION_WINDOW_DAYS", "14"))
ROUTING_WINDOW_HOURS = int(os.getenv("ROUTING_WINDOW_HOURS", "24"))
DEFAULT_DAILY_ROUTE_LIMIT = int(os.getenv("DEFAULT_DAILY_ROUTE_LIMIT", "10"))

# Ledger account that receives platform fees and holds escrow
PLATFORM_ACCOUNT_ID = os.getenv("PLATFORM_ACCOUNT_ID", "platform")

# Square Payments (delayed-capture authorizations)
SQUARE_ENVIRONMENT = os.getenv("SQUARE_ENVIRONMENT", "sandbox")  # sandbox or production
SQUARE_ACCESS_TOKEN = os.getenv("SQUARE_ACCESS_TOKEN")
SQUARE_API_VERSION = os.getenv("SQUARE_API_VERSION", "2024-12-18")
SQUARE_TIMEOUT_SECONDS = float(os.getenv("SQUARE_TIMEOUT_SECONDS", "30"))
