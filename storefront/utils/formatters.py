from datetime import datetime
import pytz
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from ..config import Config

CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€"}

def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(pytz.utc)

def quantize_money(amount: Decimal, places: int = 2) -> Decimal:
    """Round an amount to the given number of decimal places"""
    return Decimal(amount).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)

def format_price(amount: Decimal, currency: str = None) -> str:
    """Format a fiat amount for notes and messages"""
    currency = currency or Config.CURRENCY
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{symbol}{quantize_money(amount):,}"

def format_crypto(amount: Decimal, places: int) -> str:
    """Format a crypto amount without trailing zeros"""
    text = f"{quantize_money(amount, places):f}"
    return text.rstrip("0").rstrip(".") if "." in text else text

def format_datetime(dt: datetime) -> str:
    """Format a timestamp in the store's timezone"""
    store_tz = pytz.timezone(Config.TIMEZONE)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    local_time = dt.astimezone(store_tz)
    return local_time.strftime("%Y-%m-%d %H:%M:%S")

def tracking_url_for(carrier: str, tracking_number: str) -> Optional[str]:
    """Public tracking page for a known carrier, e.g. "Royal Mail" -> royalmail.com"""
    template = Config.CARRIER_TRACKING_URLS.get("".join(carrier.lower().split()))
    if template is None:
        return None
    return template.format(tracking_number=tracking_number)
