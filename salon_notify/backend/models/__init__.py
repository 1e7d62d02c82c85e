"""SQLAlchemy models."""
from salon_notify.backend.models.admin import AdminUser
from salon_notify.backend.models.app_setting import AppSetting
from salon_notify.backend.models.notification import NotificationRequest, NotificationAudit
from salon_notify.backend.models.consent import ConsentRecord, SuppressionEntry
from salon_notify.backend.models.budget import BudgetPeriod
from salon_notify.backend.models.dead_letter import DeadLetterItem
from salon_notify.backend.models.webhook_event import WebhookEvent
from salon_notify.backend.models.retry_config import RetryConfig

__all__ = [
    "AdminUser",
    "AppSetting",
    "NotificationRequest",
    "NotificationAudit",
    "ConsentRecord",
    "SuppressionEntry",
    "BudgetPeriod",
    "DeadLetterItem",
    "WebhookEvent",
    "RetryConfig",
]
