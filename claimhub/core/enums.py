"""
Core Enumerations for the Claims Hub.

Claim-level and forwarding-level statuses are separate state machines; the
mapping between them lives in ``claimhub.services.claim_state_machine``.
"""

from enum import Enum


# =============================================================================
# Claim Enums
# =============================================================================


class ClaimType(str, Enum):
    """Types of billing claims."""

    PROFESSIONAL = "PROFESSIONAL"  # CMS-1500 style claims
    INSTITUTIONAL = "INSTITUTIONAL"  # UB-04 style claims
    DENTAL = "DENTAL"
    PHARMACY = "PHARMACY"
    VISION = "VISION"


class ProcessingPath(str, Enum):
    """Where a claim is adjudicated."""

    AUTO = "AUTO"  # Decided at processing time
    INTERNAL = "INTERNAL"  # Local rules engine
    EXTERNAL = "EXTERNAL"  # Forwarded to the payer

    @classmethod
    def _missing_(cls, value):
        # Accept ?mode=internal as well as ?mode=INTERNAL
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None


class ClaimStatus(str, Enum):
    """Claim lifecycle status.

    NEW -> PROCESSING
    PROCESSING -> COMPLETE | REJECTED | ERROR          (internal path)
    PROCESSING -> SIMULATED                            (internal dry run)
    PROCESSING -> SUBMITTED | ERROR                   (external path)
    SUBMITTED -> PENDING | FAILED | ERROR
    PENDING -> COMPLETE | REJECTED | SUBMITTED | FAILED | ERROR
    """

    NEW = "NEW"
    PROCESSING = "PROCESSING"
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    SIMULATED = "SIMULATED"  # Adjudicated internally as a dry run
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    CANCELED = "CANCELED"


class ForwardStatus(str, Enum):
    """Status of one forwarding lineage to an external payer."""

    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED_RETRY = "FAILED_RETRY"
    FAILED = "FAILED"
    ERROR = "ERROR"


class ClaimEventType(str, Enum):
    """Audit event types appended to the claim event log."""

    CLAIM_CREATED = "CLAIM_CREATED"
    LINE_ITEMS_ADDED = "LINE_ITEMS_ADDED"
    PROCESSING_STARTED = "PROCESSING_STARTED"
    PATH_SELECTED = "PATH_SELECTED"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    INTERNAL_RULES_APPLIED = "INTERNAL_RULES_APPLIED"
    INTERNAL_RULES_ERROR = "INTERNAL_RULES_ERROR"
    EXTERNAL_PAYER_QUEUED = "EXTERNAL_PAYER_QUEUED"
    EXTERNAL_PAYER_SENT = "EXTERNAL_PAYER_SENT"
    EXTERNAL_PAYER_ACKNOWLEDGED = "EXTERNAL_PAYER_ACKNOWLEDGED"
    EXTERNAL_PAYER_COMPLETED = "EXTERNAL_PAYER_COMPLETED"
    EXTERNAL_PAYER_REJECTED = "EXTERNAL_PAYER_REJECTED"
    EXTERNAL_PAYER_RETRY_SCHEDULED = "EXTERNAL_PAYER_RETRY_SCHEDULED"
    EXTERNAL_PAYER_FAILED = "EXTERNAL_PAYER_FAILED"
    EXTERNAL_PAYER_ERROR = "EXTERNAL_PAYER_ERROR"
    CLAIM_CANCELED = "CLAIM_CANCELED"
    CLAIM_RESUBMITTED = "CLAIM_RESUBMITTED"
    SIMULATION_COMPLETED = "SIMULATION_COMPLETED"


# =============================================================================
# Payer Integration Enums
# =============================================================================


class PayerAuthType(str, Enum):
    """Authentication scheme used against a payer endpoint."""

    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


class TransportMethod(str, Enum):
    """How a claim is delivered to a payer."""

    API = "API"
    SIMULATED = "SIMULATED"


class IntegrationMode(str, Enum):
    """System integration mode."""

    DEMO = "demo"  # Simulated payers for connections without an endpoint
    LIVE = "live"  # Only real payer endpoints


class ProviderStatus(str, Enum):
    """Health status of a dependency."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
