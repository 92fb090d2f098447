from __future__ import annotations


class ReminderError(Exception):
    """Base class for every error raised by the reminder engine."""


class ValidationError(ReminderError):
    """The request is malformed or its target is not eligible for a reminder."""


class InvalidTimeFormat(ValidationError):
    """A time-of-day string is not a valid ``HH:MM`` value."""


class PastScheduleError(ReminderError):
    """The computed delivery instant is not far enough in the future."""


class NotFoundError(KeyError):
    """Raised when a notification, entity or recipient id does not exist."""


class AlreadyTerminalError(ReminderError):
    def __init__(self, notification_id: str, state: str) -> None:
        super().__init__(f"notification {notification_id} is already {state}")
        self.notification_id = notification_id
        self.state = state


class AlreadySentError(AlreadyTerminalError):
    pass


class AlreadyCancelledError(AlreadyTerminalError):
    pass


class DeliveryInProgressError(ReminderError):
    """A delivery callback holds the record's claim; it cannot be changed until the claim is released."""

    def __init__(self, notification_id: str) -> None:
        super().__init__(f"notification {notification_id} is being delivered")
        self.notification_id = notification_id


class DispatchFailure(ReminderError):
    """An enqueue, cancel or reschedule call to the dispatch facility failed."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class DeliveryFailure(ReminderError):
    """The e-mail transport rejected a send, cancel or update call."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class BatchScheduleError(ReminderError):
    """A multi-recipient batch failed and was rolled back."""

    def __init__(self, recipient_id: str, message: str) -> None:
        super().__init__(f"scheduling failed for recipient {recipient_id}: {message}")
        self.recipient_id = recipient_id


def raise_for_terminal_state(notification_id: str, state: str) -> None:
    if state == "sent":
        raise AlreadySentError(notification_id, state)
    if state == "cancelled":
        raise AlreadyCancelledError(notification_id, state)
    if state != "pending":
        raise AlreadyTerminalError(notification_id, state)
