"""
Deployment trigger - notified once when a session succeeds.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from toolstream.core.config import settings
from toolstream.core.logging_config import logger


class DeploymentTrigger(ABC):

    @abstractmethod
    async def trigger(self, session_id: str, payload: Dict[str, Any]) -> bool:
        """Returns True when the deployment was accepted"""


class NullDeploymentTrigger(DeploymentTrigger):

    async def trigger(self, session_id: str, payload: Dict[str, Any]) -> bool:
        logger.debug(f"[Deploy] No deployment configured for {session_id}")
        return False


class HttpDeploymentTrigger(DeploymentTrigger):
    """POST the session summary to a webhook"""

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout or settings.DEPLOY_WEBHOOK_TIMEOUT
        self._client = client

    async def trigger(self, session_id: str, payload: Dict[str, Any]) -> bool:
        body = {"session_id": session_id, **payload}
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body)

        if response.is_success:
            logger.info(f"[Deploy] Triggered deployment for {session_id} ({response.status_code})")
            return True
        logger.warning(f"[Deploy] Webhook rejected {session_id}: HTTP {response.status_code}")
        return False


def get_deployment_trigger() -> DeploymentTrigger:
    if settings.DEPLOY_WEBHOOK_URL:
        return HttpDeploymentTrigger(settings.DEPLOY_WEBHOOK_URL)
    return NullDeploymentTrigger()
