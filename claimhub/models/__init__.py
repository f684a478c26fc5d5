"""
SQLAlchemy Models for the Claims Hub.

This module exports all database models for the application.
"""

from claimhub.models.base import Base, TimeStampedModel, UUIDModel
from claimhub.models.claim import (
    Claim,
    ClaimEvent,
    ClaimLineItem,
    ClaimPayerForward,
    RuleCacheEntry,
)

__all__ = [
    "Base",
    "TimeStampedModel",
    "UUIDModel",
    "Claim",
    "ClaimEvent",
    "ClaimLineItem",
    "ClaimPayerForward",
    "RuleCacheEntry",
]
