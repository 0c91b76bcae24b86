"""
Delivery Dispatcher - sends one rendered message to many destinations.

Sends run concurrently on a long-lived thread pool. Each destination is
isolated: a failure, exception or timeout on one never affects the others,
and the overall dispatch succeeds when at least one destination accepted
the message.

When a provider answers "slow down", the wait-until time is stored per
platform so every worker process backs off together.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

from core.cache.store import RateDedupStore, StoreUnavailableError
from core.clock import Clock, SystemClock
from notification.channels import PushProvider
from notification.exceptions import ProviderRateLimitError
from notification.models import DeliveryResult, DeviceToken, DispatchReport, RenderedMessage
from notification.repositories import DeviceTokenRepository

logger = logging.getLogger(__name__)


class PlatformBackoff:
    """
    Coordinates provider rate limits across workers.

    When any worker is told to back off, it stores the "wait until"
    timestamp; all workers check it before sending to that platform.
    """

    RATE_LIMIT_PREFIX = "notification:rate_limit:"

    def __init__(self, store: RateDedupStore, clock: Optional[Clock] = None, max_wait_seconds: int = 300):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_wait_seconds = max_wait_seconds

    def set_rate_limit(self, platform: str, retry_after: int) -> None:
        retry_after = min(retry_after, self.max_wait_seconds)
        wait_until = self.clock.timestamp() + retry_after
        try:
            self.store.set(f"{self.RATE_LIMIT_PREFIX}{platform}", str(wait_until), ttl=retry_after + 5)
        except StoreUnavailableError as e:
            logger.warning(f"Could not store backoff for {platform}: {e}")

    def get_wait_time(self, platform: str) -> float:
        """Seconds left before `platform` may be used again (0 if not limited)."""
        try:
            wait_until = self.store.get(f"{self.RATE_LIMIT_PREFIX}{platform}")
        except StoreUnavailableError as e:
            logger.warning(f"Could not read backoff for {platform}: {e}")
            return 0
        if not wait_until:
            return 0
        try:
            return min(max(0.0, float(wait_until) - self.clock.timestamp()), self.max_wait_seconds)
        except ValueError:
            return 0


class DeliveryDispatcher:
    """Fan a message out to a user's destinations through the platform providers."""

    def __init__(
        self,
        providers: Dict[str, PushProvider],
        backoff: PlatformBackoff,
        tokens: Optional[DeviceTokenRepository] = None,
        max_workers: int = 8,
        send_timeout_seconds: float = 15.0
    ):
        self.providers = providers
        self.backoff = backoff
        self.tokens = tokens
        self.send_timeout_seconds = send_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="push")

    def send(
        self,
        destination: DeviceToken,
        message: RenderedMessage,
        options: Optional[Dict[str, Any]] = None
    ) -> DeliveryResult:
        """Deliver to a single destination. Never raises."""
        options = options or {}
        wait_time = self.backoff.get_wait_time(destination.platform)
        if wait_time > 0:
            logger.info(f"{destination.platform} backing off for {wait_time:.0f}s, skipping send")
            return DeliveryResult(destination=destination.token, success=False, error='rate_limited')

        provider = self.providers.get(destination.platform)
        if provider is None:
            logger.error(f"No push provider configured for platform {destination.platform}")
            return DeliveryResult(destination=destination.token, success=False, error='no_provider')

        try:
            return provider.send(destination.token, message, options)
        except ProviderRateLimitError as e:
            logger.warning(str(e))
            self.backoff.set_rate_limit(destination.platform, e.retry_after)
            return DeliveryResult(destination=destination.token, success=False, error='rate_limited')
        except Exception as e:
            logger.error(f"Provider {destination.platform} raised while sending: {e}")
            return DeliveryResult(destination=destination.token, success=False, error=str(e))

    def dispatch(
        self,
        user_id: str,
        destinations: List[DeviceToken],
        message: RenderedMessage,
        options: Optional[Dict[str, Any]] = None
    ) -> DispatchReport:
        """
        Send to every destination concurrently.

        Args:
            user_id: Owner of the destinations (used to deactivate dead tokens)
            destinations: Active device tokens
            message: Rendered message
            options: Delivery options passed to each provider

        Returns:
            DispatchReport with one result per destination; sends still
            running after the timeout are reported as failed.
        """
        report = DispatchReport()
        if not destinations:
            return report

        futures = {
            self._executor.submit(self.send, destination, message, options): destination
            for destination in destinations
        }
        done, not_done = wait(futures, timeout=self.send_timeout_seconds)

        for future, destination in futures.items():
            if future in done:
                result = future.result()
            else:
                future.cancel()
                logger.warning(f"{destination.platform} send timed out after {self.send_timeout_seconds}s")
                result = DeliveryResult(destination=destination.token, success=False, error='timeout')
            report.results.append(result)

            if result.invalid_token:
                self._deactivate(user_id, destination.token)
            elif not result.success:
                logger.info(f"Delivery to {destination.platform} destination failed: {result.error}")

        return report

    def _deactivate(self, user_id: str, token: str) -> None:
        if self.tokens is None:
            return
        try:
            self.tokens.deactivate(user_id, token)
        except StoreUnavailableError as e:
            logger.warning(f"Could not deactivate token for {user_id}: {e}")

    def close(self) -> None:
        self._executor.shutdown(wait=False)
