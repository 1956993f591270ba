"""
Price feed sensors for the Trailing Stop Engine.
"""
from sensors.price_feed import ExchangePriceFeed, HttpPriceFeed, PriceFeed, StaticPriceFeed

__all__ = [
    "ExchangePriceFeed",
    "HttpPriceFeed",
    "PriceFeed",
    "StaticPriceFeed",
]
