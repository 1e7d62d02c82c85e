"""RQ jobs."""
import logging

logger = logging.getLogger(__name__)


def process_notifications_batch(limit: int | None = None) -> dict:
    """One delivery pass: claim due notifications and send them."""
    from salon_notify.backend.services.delivery import process_due_notifications

    result = process_due_notifications(limit=limit)
    logger.info("process_notifications_batch %s", result)
    return result
