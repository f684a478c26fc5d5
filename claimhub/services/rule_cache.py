"""
Rule Result Cache.

Maps a deterministic fingerprint of claim content to a previously computed
adjudication result. The fingerprint covers claim type, payer, provider,
patient and each line item's service code and amount; it never includes the
claim ID, so identical claims share an entry.
"""

import hashlib
import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Optional

from claimhub.core.enums import ClaimType
from claimhub.models.base import utcnow
from claimhub.models.claim import Claim, ClaimLineItem
from claimhub.services.claim_store import ClaimStore

logger = logging.getLogger(__name__)


def compute_fingerprint(claim: Claim, line_items: Sequence[ClaimLineItem]) -> str:
    """SHA-256 over canonical JSON of the cache-relevant claim fields."""
    claim_type = claim.claim_type.value if isinstance(claim.claim_type, ClaimType) else claim.claim_type
    canonical = {
        "claim_type": claim_type,
        "payer_id": claim.payer_id,
        "provider_id": claim.provider_id,
        "patient_id": claim.patient_id,
        "line_items": [
            [item.service_code, f"{item.total_price:.2f}"]
            for item in sorted(line_items, key=lambda li: li.sequence)
        ],
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class RuleResultCache:
    """
    Freshness-checked cache over the ``claim_rules_cache`` table.

    Read and write failures are logged and reported as a miss or a skipped
    write; adjudication never fails because of the cache.
    """

    def __init__(
        self,
        store: ClaimStore,
        max_age: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._max_age = max_age
        self._clock = clock

    @property
    def max_age(self) -> timedelta:
        return self._max_age

    async def get(self, cache_key: str) -> Optional[dict[str, Any]]:
        """Cached result for the key, or None when absent, stale or unreadable."""
        try:
            entry = await self._store.get_cache_entry(cache_key)
        except Exception:
            logger.warning(f"Rule cache read failed for {cache_key[:12]}", exc_info=True)
            return None

        if entry is None:
            return None
        age = self._clock() - entry.updated_at
        if age > self._max_age:
            logger.debug(f"Rule cache entry {cache_key[:12]} is stale ({age})")
            return None
        return entry.result

    async def put(
        self,
        cache_key: str,
        claim_type: ClaimType,
        payer_id: str,
        result: dict[str, Any],
    ) -> bool:
        """Upsert a result. Returns False when the write failed."""
        try:
            await self._store.upsert_cache_entry(
                cache_key, claim_type, payer_id, result, now=self._clock()
            )
            return True
        except Exception:
            logger.warning(f"Rule cache write failed for {cache_key[:12]}", exc_info=True)
            return False
