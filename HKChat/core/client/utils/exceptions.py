"""
Custom exceptions for the HKChat client runtime.
"""


class ClientError(Exception):
    """Base exception for client errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class AuthenticationError(ClientError):
    """The relay refused the connect-time credential."""
    pass


class WsConnectionError(ClientError):
    """Exception raised for connection-related errors."""
    pass


class CallError(ClientError):
    """Base exception for call-session errors."""
    pass


class MediaAcquisitionError(CallError):
    """Microphone / camera could not be opened."""
    pass


class NegotiationError(CallError):
    """Offer / answer / remote description handling failed."""
    pass


class InvalidTransitionError(CallError):
    """An event is not valid in the current call state."""

    def __init__(self, state, event):
        super().__init__(
            f"Event {event.name} is not valid in state {state.name}",
            {"state": state.name, "event": event.name},
        )
        self.state = state
        self.event = event
