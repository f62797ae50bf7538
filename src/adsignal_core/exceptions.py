"""Custom exceptions for the attribution core."""


class AdSignalError(Exception):
    """Base exception for all attribution core errors."""


class EventNotFoundError(AdSignalError):
    """Raised when an operation targets a tracking event that does not exist."""

    def __init__(self, store_id: str, event_ref: object):
        self.store_id = store_id
        self.event_ref = event_ref
        super().__init__(
            f"Tracking event not found for store={store_id}, ref={event_ref}"
        )


class InvalidPayloadError(AdSignalError):
    """Raised when an inbound payload cannot be normalized into an event draft."""

    def __init__(self, reason: str, payload_kind: str = "payload"):
        self.reason = reason
        self.payload_kind = payload_kind
        super().__init__(f"Invalid {payload_kind}: {reason}")
