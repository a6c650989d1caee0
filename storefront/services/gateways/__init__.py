"""Payment gateway adapters"""
from .base import PaymentGatewayAdapter
from .bitcoin import BitcoinGateway
from .exchange_rates import ExchangeRateService
from .http import GatewayHttpClient, HttpResponse
from .monero import MoneroGateway
from .paypal import PayPalGateway

__all__ = [
    'PaymentGatewayAdapter',
    'PayPalGateway',
    'BitcoinGateway',
    'MoneroGateway',
    'ExchangeRateService',
    'GatewayHttpClient',
    'HttpResponse'
]
