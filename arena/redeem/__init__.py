"""Redeem module: promo code validation and crediting."""
from .engine import RedeemEngine

__all__ = ["RedeemEngine"]
