"""
Realtime Broadcaster - fan-out of events to live connections

Broadcasts are idempotent per event id: the first caller claims the id with
set-if-absent in the shared store and later calls with the same id are
no-ops, so producers may deliver events at-least-once.

Per-target sends are isolated. A failing target is logged and reported;
it never stops delivery to the others and never raises to the caller.
Offline users simply receive nothing; durable delivery is the scheduler's
job through push tokens.

Usage:
    from notification.broadcaster import RealtimeBroadcaster

    broadcaster = RealtimeBroadcaster(store, transport)
    broadcaster.broadcast("post:42:liked:u7", ["u1", "u2"], {"postId": "42"})
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from core.cache.store import RateDedupStore, StoreUnavailableError
from notification.interfaces import RealtimeTransport
from notification.models import BroadcastReport, ResourceUpdate

logger = logging.getLogger(__name__)


def _unique(user_ids: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for user_id in user_ids:
        if user_id not in seen:
            seen.add(user_id)
            ordered.append(user_id)
    return ordered


class RealtimeBroadcaster:
    """Deduplicating, failure-isolating fan-out over a RealtimeTransport."""

    DEDUP_KEY = "broadcast:dedup:{event_id}"
    RESOURCE_VERSION_KEY = "resource_version:{resource_type}"

    def __init__(
        self,
        store: RateDedupStore,
        transport: RealtimeTransport,
        dedup_ttl_seconds: int = 60
    ):
        self.store = store
        self.transport = transport
        self.dedup_ttl_seconds = dedup_ttl_seconds

    def _claim(self, event_id: str) -> bool:
        """True if this call is the first to see `event_id` within the dedup TTL."""
        try:
            return self.store.set_if_absent(
                self.DEDUP_KEY.format(event_id=event_id), "1", self.dedup_ttl_seconds
            )
        except StoreUnavailableError as e:
            logger.warning(f"Dedup store unavailable, broadcasting {event_id} anyway: {e}")
            return True

    def _send(self, user_id: str, event_name: str, payload: Dict[str, Any], report: BroadcastReport) -> None:
        try:
            written = self.transport.broadcast_to_user(user_id, event_name, payload)
        except Exception as e:
            logger.warning(f"Realtime send of {report.event_id} to {user_id} failed: {e}")
            report.failed.append(user_id)
            return
        if written > 0:
            report.delivered.append(user_id)
        else:
            report.offline.append(user_id)

    def broadcast(
        self,
        event_id: str,
        target_user_ids: Iterable[str],
        payload: Dict[str, Any],
        event_name: str = "notification"
    ) -> BroadcastReport:
        """
        Send `payload` to every target user's live connections.

        Args:
            event_id: Id of the underlying domain event; repeats are suppressed
            target_user_ids: Users to notify
            payload: Event body
            event_name: Socket event name

        Returns:
            BroadcastReport; `duplicate` is set when the call was suppressed
        """
        report = BroadcastReport(event_id=event_id)
        if not self._claim(event_id):
            logger.debug(f"Suppressed duplicate broadcast {event_id}")
            report.duplicate = True
            return report

        for user_id in _unique(target_user_ids):
            self._send(user_id, event_name, payload, report)

        if report.failed:
            logger.info(
                f"Broadcast {event_id}: {len(report.delivered)} delivered, "
                f"{len(report.offline)} offline, {len(report.failed)} failed"
            )
        return report

    def broadcast_prioritized(
        self,
        event_id: str,
        audience: Iterable[str],
        active_user_ids: Iterable[str],
        payload: Dict[str, Any],
        event_name: str = "feed_update"
    ) -> BroadcastReport:
        """
        High-priority variant to the active subset first, then a normal-priority
        variant to the rest of the audience.
        """
        report = BroadcastReport(event_id=event_id)
        if not self._claim(event_id):
            report.duplicate = True
            return report

        audience = _unique(audience)
        active = set(active_user_ids)
        first = [u for u in audience if u in active]
        rest = [u for u in audience if u not in active]

        high = {**payload, 'priority': 'high'}
        for user_id in first:
            self._send(user_id, event_name, high, report)

        normal = {**payload, 'priority': 'normal'}
        for user_id in rest:
            self._send(user_id, event_name, normal, report)
        return report

    @staticmethod
    def resolve_conflicts(updates: List[ResourceUpdate]) -> List[ResourceUpdate]:
        """Keep only the most recent update per resource. Ties go to the later arrival."""
        latest: Dict[str, ResourceUpdate] = {}
        for update in updates:
            current = latest.get(update.resource_key)
            if current is None or update.timestamp >= current.timestamp:
                latest[update.resource_key] = update
        return list(latest.values())

    def publish_resource_update(
        self,
        update: ResourceUpdate,
        target_user_ids: Iterable[str],
        event_name: str = "resource_update"
    ) -> Optional[BroadcastReport]:
        """
        Broadcast an update unless a newer one for the same resource was already published.

        The version check is a store-side compare-and-set, so concurrent
        publishers in different processes agree on a single winner.
        """
        score = update.timestamp.timestamp()
        try:
            newest = self.store.zadd_if_greater(
                self.RESOURCE_VERSION_KEY.format(resource_type=update.resource_type),
                update.resource_id,
                score
            )
        except StoreUnavailableError as e:
            logger.warning(f"Version store unavailable, publishing {update.resource_key}: {e}")
            newest = True

        if not newest:
            logger.debug(f"Dropping stale update for {update.resource_key}")
            return None

        payload = {
            **update.payload,
            'resourceType': update.resource_type,
            'resourceId': update.resource_id,
            'timestamp': update.timestamp.isoformat(),
        }
        return self.broadcast(f"{update.resource_key}:{score}", target_user_ids, payload, event_name)

    def publish_resource_updates(
        self,
        updates: List[ResourceUpdate],
        target_user_ids: Iterable[str]
    ) -> List[BroadcastReport]:
        targets = list(target_user_ids)
        reports = []
        for update in self.resolve_conflicts(updates):
            report = self.publish_resource_update(update, targets)
            if report is not None:
                reports.append(report)
        return reports
