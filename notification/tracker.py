#!/usr/bin/env python3
"""
Delivery Tracker - submission dedup and delivery outcome records

Producers may submit the same intent more than once (at-least-once upstream).
The tracker claims each intent id with set-if-absent so only the first
submission enters the pipeline, and keeps a short-lived record of what
finally happened to it.

Usage:
    from notification.tracker import DeliveryTracker

    tracker = DeliveryTracker(store)

    if tracker.claim_submission(intent.id):
        scheduler.schedule(intent)

    tracker.record_outcome(intent.id, DeliveryStatus.SENT, attempts=1)
    tracker.get_status(intent.id)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from core.cache.store import RateDedupStore, StoreUnavailableError
from notification.models import DeliveryStatus

# Records outlive any retry schedule by a wide margin
RECORD_TTL_SECONDS = 7 * 24 * 3600

logger = logging.getLogger(__name__)


class DeliveryTracker:
    """
    Tracks submissions and delivery outcomes in the shared store.

    Store failures are permissive: a claim that cannot be checked is granted,
    an outcome that cannot be written is only logged.
    """

    CLAIM_KEY = "delivery:claim:{intent_id}"
    RECORD_KEY = "delivery:{intent_id}"

    def __init__(self, store: RateDedupStore, ttl_seconds: int = RECORD_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def claim_submission(self, intent_id: str) -> bool:
        """
        Claim an intent id for processing.

        Returns:
            True if this is the first submission of the id, False if duplicate
        """
        try:
            claimed = self.store.set_if_absent(
                self.CLAIM_KEY.format(intent_id=intent_id),
                datetime.now(timezone.utc).isoformat(),
                self.ttl_seconds
            )
        except StoreUnavailableError as e:
            logger.warning(f"Could not claim intent {intent_id}, accepting it: {e}")
            return True

        if not claimed:
            logger.info(f"Suppressing duplicate submission of intent {intent_id}")
        return claimed

    def record_outcome(
        self,
        intent_id: str,
        status: DeliveryStatus,
        attempts: int = 0,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record the latest state of an intent.

        Args:
            intent_id: Intent the record belongs to
            status: Current delivery status
            attempts: Delivery attempts made so far
            error: Last error message, if any
            metadata: Additional context (user, template, batch members)
        """
        record = {
            'intent_id': intent_id,
            'status': status.value,
            'attempts': attempts,
            'error': error,
            'updated_at': datetime.now(timezone.utc).isoformat(),
            'metadata': metadata or {},
        }
        try:
            self.store.set(
                self.RECORD_KEY.format(intent_id=intent_id),
                json.dumps(record, default=str),
                ttl=self.ttl_seconds
            )
        except StoreUnavailableError as e:
            logger.warning(f"Could not record outcome {status.value} for {intent_id}: {e}")

    def get_status(self, intent_id: str) -> Optional[Dict[str, Any]]:
        """Latest record for an intent, or None if unknown or expired."""
        raw = self.store.get(self.RECORD_KEY.format(intent_id=intent_id))
        if not raw:
            return None
        return json.loads(raw)
