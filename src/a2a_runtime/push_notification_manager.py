"""
Push Notification Manager for the A2A runtime.

Keeps per-task webhook configurations and delivers task events to them over
HTTP with authentication headers, optional HMAC signing and retry with
exponential backoff. Delivery failures are logged and never reach the task
flow that produced the event.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Dict, List, Optional, Set

import httpx
from httpx import AsyncClient, Response, Timeout

from .a2a.models import (
    PushNotificationConfig,
    TaskEvent,
    TaskPushNotificationConfig,
    generate_id,
)
from .settings import PushNotificationSettings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-A2A-Signature"
TOKEN_HEADER = "X-A2A-Notification-Token"


class PushNotificationManager:
    """
    Manages push notifications for tasks.

    Handles configuration storage, HTTP delivery, authentication and
    retry logic.
    """

    def __init__(
        self,
        settings: PushNotificationSettings,
        http_client: Optional[AsyncClient] = None,
    ):
        """Initialize the push notification manager."""
        self.settings = settings
        self._configs: Dict[str, Dict[str, PushNotificationConfig]] = {}
        self._pending: Set["asyncio.Task[int]"] = set()
        self._owns_client = http_client is None
        self.http_client: Optional[AsyncClient] = http_client
        if self.http_client is None:
            self._init_http_client()

    def _init_http_client(self) -> None:
        """Initialize the HTTP client with proper configuration."""
        timeout = Timeout(self.settings.webhook_timeout, connect=10.0)
        self.http_client = AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=3,
        )

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    async def set_config(
        self, task_id: str, config: PushNotificationConfig
    ) -> TaskPushNotificationConfig:
        """Store a webhook configuration for ``task_id``, assigning an id if needed."""
        stored = config.model_copy(deep=True)
        if not stored.id:
            stored.id = generate_id("push_")
        self._configs.setdefault(task_id, {})[stored.id] = stored
        logger.info(
            "Stored push notification config",
            extra={"config_id": stored.id, "task_id": task_id, "url": stored.url},
        )
        return TaskPushNotificationConfig(taskId=task_id, pushNotificationConfig=stored)

    async def get_config(
        self, task_id: str, config_id: Optional[str] = None
    ) -> Optional[TaskPushNotificationConfig]:
        """Retrieve one configuration; the first one registered when no id is given."""
        configs = self._configs.get(task_id, {})
        if config_id is None:
            config = next(iter(configs.values()), None)
        else:
            config = configs.get(config_id)
        if config is None:
            return None
        return TaskPushNotificationConfig(
            taskId=task_id, pushNotificationConfig=config.model_copy(deep=True)
        )

    async def list_configs(self, task_id: str) -> List[TaskPushNotificationConfig]:
        """List every configuration registered for ``task_id``."""
        return [
            TaskPushNotificationConfig(
                taskId=task_id, pushNotificationConfig=config.model_copy(deep=True)
            )
            for config in self._configs.get(task_id, {}).values()
        ]

    async def delete_config(self, task_id: str, config_id: str) -> bool:
        """Delete one configuration. Returns ``True`` when it existed."""
        configs = self._configs.get(task_id, {})
        removed = configs.pop(config_id, None)
        if not configs:
            self._configs.pop(task_id, None)
        if removed is not None:
            logger.info(
                "Deleted push notification config",
                extra={"config_id": config_id, "task_id": task_id},
            )
        return removed is not None

    async def delete_task_configs(self, task_id: str) -> int:
        """Drop every configuration of ``task_id``. Returns how many were removed."""
        removed = self._configs.pop(task_id, {})
        return len(removed)

    def notify(self, task_id: str, event: TaskEvent) -> None:
        """Schedule background delivery of ``event`` to the task's webhooks."""
        if not self.enabled or not self._configs.get(task_id):
            return
        delivery = asyncio.create_task(self.send_notification(task_id, event))
        self._pending.add(delivery)
        delivery.add_done_callback(self._pending.discard)

    async def wait_for_notifications(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def send_notification(self, task_id: str, event: TaskEvent) -> int:
        """Send ``event`` to every endpoint configured for the task.

        Returns the number of endpoints that accepted the notification.
        """
        configs = list(self._configs.get(task_id, {}).values())
        if not configs:
            logger.debug("No notification configs found for task", extra={"task_id": task_id})
            return 0

        body = json.dumps(
            event.model_dump(mode="json", exclude_none=True), separators=(",", ":")
        ).encode("utf-8")

        delivered = 0
        for config in configs:
            if await self._send_single_notification(task_id, config, body):
                delivered += 1
        return delivered

    async def _send_single_notification(
        self,
        task_id: str,
        config: PushNotificationConfig,
        body: bytes,
    ) -> bool:
        """Send a notification to a single endpoint with retry logic."""
        if not self.http_client:
            logger.error("HTTP client not initialized")
            return False

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "A2A-Runtime-PushNotificationManager/1.0",
        }
        headers.update(self._get_authentication_headers(config))
        if self.settings.hmac_secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.settings.hmac_secret, body)

        for attempt in range(self.settings.retry_attempts + 1):
            start_time = time.time()
            try:
                response: Response = await self.http_client.post(
                    config.url, content=body, headers=headers
                )
                response_time = time.time() - start_time

                if response.is_success:
                    logger.info(
                        "Notification delivered successfully",
                        extra={
                            "config_id": config.id,
                            "task_id": task_id,
                            "url": config.url,
                            "response_time": response_time,
                            "status_code": response.status_code,
                        },
                    )
                    return True

                logger.warning(
                    "Notification delivery failed",
                    extra={
                        "config_id": config.id,
                        "task_id": task_id,
                        "url": config.url,
                        "status_code": response.status_code,
                        "response_body": response.text[:500],
                        "attempt": attempt + 1,
                    },
                )
            except httpx.HTTPError as e:
                logger.warning(
                    "Notification delivery error",
                    extra={
                        "config_id": config.id,
                        "task_id": task_id,
                        "url": config.url,
                        "error": str(e),
                        "attempt": attempt + 1,
                    },
                )

            # Wait before retry (exponential backoff)
            if attempt < self.settings.retry_attempts:
                delay = min(
                    self.settings.retry_delay * (2 ** attempt),
                    self.settings.max_retry_delay,
                )
                await asyncio.sleep(delay)

        logger.error(
            "Notification delivery gave up",
            extra={"config_id": config.id, "task_id": task_id, "url": config.url},
        )
        return False

    def _get_authentication_headers(self, config: PushNotificationConfig) -> Dict[str, str]:
        """Get authentication headers for the notification request."""
        headers: Dict[str, str] = {}

        if config.token:
            headers[TOKEN_HEADER] = config.token
            headers["Authorization"] = f"Bearer {config.token}"

        auth = config.authentication
        if auth and auth.credentials:
            schemes = [scheme.lower() for scheme in auth.schemes]
            if "bearer" in schemes:
                headers["Authorization"] = f"Bearer {auth.credentials}"
            elif "basic" in schemes:
                headers["Authorization"] = f"Basic {auth.credentials}"

        return headers

    async def close(self) -> None:
        """Wait for pending deliveries, then close the HTTP client."""
        await self.wait_for_notifications()
        if self.http_client and self._owns_client:
            await self.http_client.aclose()
        self.http_client = None


def sign_payload(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` HMAC signature of a webhook body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"
