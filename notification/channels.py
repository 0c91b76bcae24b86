#!/usr/bin/env python3
"""
Push Providers - delivery to a single push destination

Each provider sends one rendered message to one device token. Providers are
interchangeable behind the PushProvider interface and are created per
platform (android, ios, web) by PushProviderFactory.

Usage:
    from notification.channels import PushProviderFactory

    provider = PushProviderFactory.create('android', provider_config)
    result = provider.send(token, message, {'intent_id': 'abc'})
"""

from abc import ABC, abstractmethod
from dataclasses import asdict
from typing import Dict, Any, Optional
import logging
import os
import urllib.parse

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_fixed,
    retry_if_exception,
    before_sleep_log
)

from core.config_loader import ProviderConfig
from notification.exceptions import ProviderRateLimitError
from notification.models import DeliveryResult, RenderedMessage

logger = logging.getLogger(__name__)


def _is_dry_run_mode() -> bool:
    """Check if push providers should run in dry-run (log-only) mode."""
    return os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes')


def _mask_token(token: str) -> str:
    """Show only the tail of a device token in logs."""
    if len(token) <= 6:
        return "***"
    return f"***{token[-6:]}"


def _is_retryable_error(exc: Exception) -> bool:
    """
    Retry on timeouts, 5xx responses and connection errors.

    Never retries 4xx client errors; those will not change on a second try.
    """
    if isinstance(exc, requests.Timeout):
        return True

    if isinstance(exc, requests.HTTPError):
        response = getattr(exc, 'response', None)
        if response is not None:
            return response.status_code >= 500
        return True

    if isinstance(exc, requests.RequestException):
        response = getattr(exc, 'response', None)
        if response is not None and 400 <= response.status_code < 500:
            return False
        return True

    return False


class PushProvider(ABC):
    """
    Abstract base class for push providers.

    A provider must never raise for an ordinary delivery failure; it reports
    it in the returned DeliveryResult. ProviderRateLimitError is the one
    exception, so the dispatcher can back off the whole platform.
    """

    def __init__(self, platform: str, config: Optional[ProviderConfig] = None):
        self.platform = platform
        self.config = config or ProviderConfig()

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Return the provider type identifier."""
        pass

    @abstractmethod
    def send(self, token: str, message: RenderedMessage, options: Dict[str, Any]) -> DeliveryResult:
        """
        Send a message to one device token.

        Args:
            token: Destination device token
            message: Rendered title/body/data
            options: Delivery options (intent id, priority, ttl)

        Returns:
            DeliveryResult for this destination
        """
        pass

    def validate_config(self) -> bool:
        return True


class LogPushProvider(PushProvider):
    """Dry-run provider: logs the message instead of sending it."""

    @property
    def provider_type(self) -> str:
        return 'log'

    def send(self, token: str, message: RenderedMessage, options: Dict[str, Any]) -> DeliveryResult:
        logger.info(
            f"[DRY RUN] {self.platform} push to {_mask_token(token)}: "
            f"{message.title} | {message.body}"
        )
        return DeliveryResult(destination=token, success=True)


class WebhookPushProvider(PushProvider):
    """
    Posts the message as JSON to a push gateway.

    The gateway answers 2xx on success, 404/410 for an unknown or expired
    token and 429 (with Retry-After) when we should slow down.
    """

    @property
    def provider_type(self) -> str:
        return 'webhook'

    def validate_config(self) -> bool:
        if not self.config.url:
            return False
        parsed = urllib.parse.urlparse(self.config.url)
        return parsed.scheme in ('http', 'https') and bool(parsed.hostname)

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'SocialNotify-Push/1.0'
        }
        if self.config.auth_token:
            headers['Authorization'] = f"Bearer {self.config.auth_token}"
        return headers

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_fixed(0.5),
        retry=retry_if_exception(_is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        response = requests.post(
            self.config.url,
            json=payload,
            headers=self._headers(),
            timeout=self.config.timeout_seconds
        )
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    def send(self, token: str, message: RenderedMessage, options: Dict[str, Any]) -> DeliveryResult:
        if not self.validate_config():
            logger.error(f"Push gateway for {self.platform} not configured")
            return DeliveryResult(destination=token, success=False, error='provider_not_configured')

        payload = {
            'token': token,
            'platform': self.platform,
            'notification': asdict(message),
            'options': options,
        }

        try:
            response = self._post(payload)
        except requests.RequestException as e:
            logger.error(f"Failed to send {self.platform} push to {_mask_token(token)}: {e}")
            return DeliveryResult(destination=token, success=False, error=str(e))

        if response.status_code == 429:
            retry_after = response.headers.get('Retry-After')
            raise ProviderRateLimitError(
                self.platform,
                int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code in (404, 410):
            logger.info(f"{self.platform} token {_mask_token(token)} no longer valid")
            return DeliveryResult(
                destination=token,
                success=False,
                error=f"invalid_token ({response.status_code})",
                invalid_token=True
            )

        if response.status_code >= 400:
            logger.error(f"{self.platform} push rejected with {response.status_code}")
            return DeliveryResult(destination=token, success=False, error=f"http_{response.status_code}")

        logger.debug(f"{self.platform} push sent to {_mask_token(token)}")
        return DeliveryResult(destination=token, success=True)


class PushProviderFactory:
    """
    Factory for push providers.

    Supports registering custom provider types in code or through the
    NOTIFICATION_PROVIDER_MODULES environment variable
    ("package.module:ClassName", comma separated).
    """

    _providers: Dict[str, type] = {
        'log': LogPushProvider,
        'webhook': WebhookPushProvider,
    }

    _custom_providers_loaded = False

    @classmethod
    def _load_custom_providers(cls):
        if cls._custom_providers_loaded:
            return

        provider_modules = os.environ.get('NOTIFICATION_PROVIDER_MODULES', '')
        for module_path in provider_modules.split(','):
            module_path = module_path.strip()
            if module_path:
                cls._load_provider_from_module(module_path)

        cls._custom_providers_loaded = True

    @classmethod
    def _load_provider_from_module(cls, module_path: str):
        """Load a provider class from an installed module."""
        import importlib

        if ':' not in module_path:
            logger.error(f"Provider module path must be 'module:Class', got {module_path}")
            return
        module_name, class_name = module_path.split(':', 1)
        try:
            module = importlib.import_module(module_name)
            provider_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            logger.error(f"Failed to load custom provider from {module_path}: {e}")
            return

        if not (isinstance(provider_class, type) and issubclass(provider_class, PushProvider)):
            logger.error(f"{module_path} is not a PushProvider")
            return
        provider_type = provider_class('custom').provider_type
        cls._providers[provider_type] = provider_class
        logger.info(f"Loaded custom provider '{provider_type}' from {module_path}")

    @classmethod
    def create(
        cls,
        platform: str,
        config: Optional[ProviderConfig] = None,
        dry_run: bool = False
    ) -> PushProvider:
        """
        Create the provider configured for a platform.

        Raises:
            ValueError: If the provider type is not registered
        """
        cls._load_custom_providers()
        config = config or ProviderConfig()

        if dry_run or _is_dry_run_mode():
            return LogPushProvider(platform, config)

        provider_class = cls._providers.get(config.type.lower())
        if not provider_class:
            raise ValueError(f"Unknown provider type: {config.type}. "
                             f"Available: {', '.join(cls._providers.keys())}")
        return provider_class(platform, config)

    @classmethod
    def register_provider(cls, provider_type: str, provider_class: type):
        if not issubclass(provider_class, PushProvider):
            raise ValueError("Provider class must extend PushProvider")
        cls._providers[provider_type.lower()] = provider_class
        logger.info(f"Registered new provider type: {provider_type}")

    @classmethod
    def list_provider_types(cls) -> list:
        cls._load_custom_providers()
        return list(cls._providers.keys())
