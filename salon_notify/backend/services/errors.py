"""Service-level errors surfaced to the API layer."""


class NotificationError(Exception):
    code = "notification_error"
    status_code = 400

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class NotificationNotFound(NotificationError):
    code = "notification_not_found"
    status_code = 404


class DeadLetterNotFound(NotificationError):
    code = "dead_letter_not_found"
    status_code = 404


class WebhookEventNotFound(NotificationError):
    code = "webhook_event_not_found"
    status_code = 404
