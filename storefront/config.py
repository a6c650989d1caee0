import os
import logging
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent.parent

class Config:
    """Configuration settings for the storefront core"""

    # Database settings
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DB_POOL_MIN_SIZE: int = int(os.getenv("DB_POOL_MIN_SIZE", "2"))
    DB_POOL_MAX_SIZE: int = int(os.getenv("DB_POOL_MAX_SIZE", "10"))

    # Storefront URLs used in gateway callbacks
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    BACKEND_URL: str = os.getenv("BACKEND_URL", "http://localhost:5000")
    BRAND_NAME: str = os.getenv("BRAND_NAME", "RDJCustoms")

    # Pricing
    CURRENCY: str = os.getenv("CURRENCY", "GBP")
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "0"))
    MAX_ITEM_QUANTITY: int = 99

    # PayPal settings
    PAYPAL_CLIENT_ID: str = os.getenv("PAYPAL_CLIENT_ID", "")
    PAYPAL_CLIENT_SECRET: str = os.getenv("PAYPAL_CLIENT_SECRET", "")
    PAYPAL_MODE: str = os.getenv("PAYPAL_MODE", "sandbox")
    PAYPAL_WEBHOOK_ID: str = os.getenv("PAYPAL_WEBHOOK_ID", "")
    PAYPAL_APPROVAL_WINDOW_HOURS: int = int(os.getenv("PAYPAL_APPROVAL_WINDOW_HOURS", "3"))

    # Bitcoin settings (Blockonomics)
    BLOCKONOMICS_API_URL: str = os.getenv("BLOCKONOMICS_API_URL", "https://www.blockonomics.co/api")
    BLOCKONOMICS_API_KEY: str = os.getenv("BLOCKONOMICS_API_KEY", "")
    BLOCKONOMICS_CALLBACK_SECRET: str = os.getenv("BLOCKONOMICS_CALLBACK_SECRET", "")
    BITCOIN_REQUIRED_CONFIRMATIONS: int = int(os.getenv("BITCOIN_REQUIRED_CONFIRMATIONS", "2"))
    BITCOIN_PAYMENT_WINDOW_HOURS: int = int(os.getenv("BITCOIN_PAYMENT_WINDOW_HOURS", "24"))

    # Monero settings (GloBee)
    GLOBEE_API_URL: str = os.getenv("GLOBEE_API_URL", "https://api.globee.com/v1")
    GLOBEE_API_KEY: str = os.getenv("GLOBEE_API_KEY", "")
    GLOBEE_SECRET: str = os.getenv("GLOBEE_SECRET", "")
    MONERO_REQUIRED_CONFIRMATIONS: int = int(os.getenv("MONERO_REQUIRED_CONFIRMATIONS", "10"))
    MONERO_PAYMENT_WINDOW_HOURS: int = int(os.getenv("MONERO_PAYMENT_WINDOW_HOURS", "24"))

    # Exchange rates
    COINGECKO_API_URL: str = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3")
    EXCHANGE_RATE_TTL_SECONDS: int = int(os.getenv("EXCHANGE_RATE_TTL_SECONDS", "300"))
    EXCHANGE_RATE_MAX_STALE_SECONDS: int = int(os.getenv("EXCHANGE_RATE_MAX_STALE_SECONDS", "3600"))

    # Network and concurrency
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    MAX_COMMIT_ATTEMPTS: int = int(os.getenv("MAX_COMMIT_ATTEMPTS", "3"))
    POLL_BATCH_SIZE: int = int(os.getenv("POLL_BATCH_SIZE", "50"))

    # Returns
    RETURN_WINDOW_DAYS: int = int(os.getenv("RETURN_WINDOW_DAYS", "30"))

    # Shipping carriers and their public tracking pages
    CARRIER_TRACKING_URLS = {
        "royalmail": "https://www.royalmail.com/track-your-item#/tracking-results/{tracking_number}",
        "ups": "https://www.ups.com/track?tracknum={tracking_number}",
        "fedex": "https://www.fedex.com/fedextrack/?tracknumbers={tracking_number}",
        "dhl": "https://www.dhl.com/en/express/tracking.html?AWB={tracking_number}",
        "usps": "https://tools.usps.com/go/TrackConfirmAction?tLabels={tracking_number}",
    }

    # Other settings
    TIMEZONE: str = os.getenv("TZ", "Europe/London")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Paths
    LOG_DIR = BASE_DIR / "logs"
    MIGRATIONS_DIR = Path(__file__).resolve().parent / "database" / "migrations"

def setup_logging():
    """Configure logging settings"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    Config.LOG_DIR.mkdir(exist_ok=True)
    log_file = Config.LOG_DIR / "storefront.log"

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL),
        format=log_format,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
