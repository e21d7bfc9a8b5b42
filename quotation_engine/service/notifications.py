from typing import Optional

from quotation_engine.service.ports import Notifier
from shared.logging import get_logger

logger = get_logger(__name__)

QUOTATIONS_LINK = "/quotations"


async def notify_best_effort(
    notifier: Optional[Notifier],
    user_id: Optional[str],
    title: str,
    description: str,
    link_path: str = QUOTATIONS_LINK,
) -> bool:
    """Sends a notification request; failures are logged, never raised."""
    if notifier is None or not user_id:
        return False
    try:
        await notifier.notify(user_id, title, description, link_path)
        logger.info(f"Notification '{title}' sent to user {user_id}")
        return True
    except Exception as e:
        logger.error(f"Failed to notify user {user_id} ('{title}'): {e}", exc_info=True)
        return False
