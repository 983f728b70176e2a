"""Reward issuance."""

from .loyalty import LoyaltyIssuer

__all__ = ["LoyaltyIssuer"]
