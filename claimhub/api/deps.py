"""
FastAPI Dependencies
Dependency injection for the services wired in the application lifespan
Source: https://fastapi.tiangolo.com/tutorial/dependencies/
"""

from fastapi import Request

from claimhub.services.claims_service import ClaimsService
from claimhub.services.container import ServiceContainer
from claimhub.services.tracking_service import ClaimTrackingService


def get_container(request: Request) -> ServiceContainer:
    """Service graph stored on ``app.state`` at startup."""
    return request.app.state.services


def get_claims_service(request: Request) -> ClaimsService:
    return get_container(request).claims


def get_tracking_service(request: Request) -> ClaimTrackingService:
    return get_container(request).tracking
