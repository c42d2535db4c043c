"""Domain exceptions raised by the relay services.

The HTTP layer maps each of these to a status code in one place
(see ``rendezvous.main``), so services never build responses themselves.
"""
from __future__ import annotations


class RelayException(Exception):
    """Base class for every relay-side failure."""

    status_code: int = 500


class RoomNotFound(RelayException):
    """Token was never issued or its room has expired."""

    status_code = 404

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__("Room not found")


class StateConflict(RelayException):
    """Operation is illegal in the room's current state."""

    status_code = 409

    def __init__(self, token: str, state: str, operation: str) -> None:
        self.token = token
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} while room is {state}")


class NotYetAvailable(RelayException):
    """The requested document has not been published yet."""

    status_code = 404

    def __init__(self, token: str, document: str) -> None:
        self.token = token
        self.document = document
        super().__init__(f"{document} not yet available")


class MalformedPayload(RelayException):
    """Request body could not be parsed or lacks a required field."""

    status_code = 400


class PayloadTooLarge(RelayException):
    """Request body exceeds the configured limit."""

    status_code = 413

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Body exceeds {limit} bytes")


class RateLimited(RelayException):
    """Client exceeded its request allowance for the current window."""

    status_code = 429

    def __init__(self, client: str) -> None:
        self.client = client
        super().__init__("Too many requests")
