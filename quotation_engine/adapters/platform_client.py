import httpx
from typing import Dict, Any, List, Optional

from quotation_engine.models import PlatformUser
from quotation_engine.service.ports import AttachmentStore, CapabilityChecker, Notifier, UserDirectory
from shared.settings import settings
from shared.logging import get_logger

logger = get_logger(__name__)


class PlatformClient(CapabilityChecker, UserDirectory, Notifier, AttachmentStore):
    """
    HTTP client for the platform service that owns users, permissions,
    notifications and notes-image storage.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        frontend_link: Optional[str] = None,
    ):
        """
        Args:
            base_url: Root of the platform API, e.g. "http://platform:8080/api".
            token: Bearer token sent with every call.
            timeout: Per-request timeout in seconds.
            frontend_link: Prefix joined with a notification's link path.
        """
        self.base_url = (base_url or settings.PLATFORM_API_URL).rstrip("/")
        self.token = token if token is not None else settings.PLATFORM_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.PLATFORM_TIMEOUT_SECONDS
        self.frontend_link = (frontend_link if frontend_link is not None else settings.FRONTEND_LINK).rstrip("/")

    def _auth_hdr(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        logger.debug("PlatformClient._auth_hdr: No token configured, sending no auth header.")
        return {}

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        headers = self._auth_hdr()
        logger.debug(f"{method} {url}")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                return await client.request(method, url, json=json, headers=headers)
            except httpx.RequestError as e: # Network errors, timeouts, etc.
                logger.error(f"RequestError calling platform {method} {url}: {e}")
                raise

    async def has_capability(self, user_id: str, capability: str) -> bool:
        response = await self._request("GET", f"/users/{user_id}/capabilities/{capability}")
        if response.status_code == 404:
            logger.debug(f"User {user_id} not found while checking '{capability}'")
            return False
        response.raise_for_status()
        granted = bool(response.json().get("granted", False))
        logger.debug(f"User {user_id} capability '{capability}': {granted}")
        return granted

    async def get_user(self, user_id: str) -> Optional[PlatformUser]:
        response = await self._request("GET", f"/users/{user_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        return PlatformUser(id=str(data.get("id", user_id)), fullName=data.get("fullName"), email=data.get("email"))

    async def notify(self, user_id: str, title: str, description: str, link_path: str) -> None:
        payload = {
            "userId": user_id,
            "title": title,
            "description": description,
            "link": f"{self.frontend_link}{link_path}" if link_path else "",
        }
        response = await self._request("POST", "/notifications", json=payload)
        if not response.is_success:
            logger.error(f"HTTP error {response.status_code} sending notification to {user_id}: {response.text}")
            response.raise_for_status()
        logger.info(f"Notification '{title}' queued for user {user_id}")

    async def delete_images(self, image_ids: List[str]) -> int:
        if not image_ids:
            return 0
        response = await self._request("POST", "/notes-images/bulk-delete", json={"ids": list(image_ids)})
        if not response.is_success:
            logger.error(f"HTTP error {response.status_code} deleting {len(image_ids)} notes images: {response.text}")
            response.raise_for_status()
        deleted = int(response.json().get("deletedCount", 0))
        logger.info(f"Platform deleted {deleted} of {len(image_ids)} notes images")
        return deleted
