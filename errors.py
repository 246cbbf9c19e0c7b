"""
Error types raised by the delivery pipeline
"""

from typing import List, Optional


class RelayError(Exception):
    """Base class for all pipeline errors"""


class BlackoutError(RelayError):
    """A request with this signature failed recently and is still blacked out"""

    def __init__(self, personality_name: str, signature: str, retry_after_ms: float):
        self.personality_name = personality_name
        self.signature = signature
        self.retry_after_ms = max(0.0, retry_after_ms)
        super().__init__(
            f"Requests for {personality_name} are paused for another "
            f"{self.retry_after_ms / 1000:.1f}s after a recent failure"
        )


class GenerationError(RelayError):
    """The response generator failed"""

    def __init__(self, message: str, personality_name: Optional[str] = None):
        super().__init__(message)
        self.personality_name = personality_name
        # Set when another request for the same personality+channel is still producing a response
        self.superseded = False


class BackendSendError(RelayError):
    """One delivery strategy failed to send a message"""

    def __init__(self, strategy: str, cause: BaseException):
        self.strategy = strategy
        self.cause = cause
        super().__init__(f"{strategy} failed: {cause}")


class TotalDeliveryError(RelayError):
    """Nothing of a response could be sent through any strategy"""

    def __init__(self, channel_id: str, errors: List[BackendSendError]):
        self.channel_id = channel_id
        self.errors = errors
        details = "; ".join(str(e) for e in errors) or "no delivery strategies available"
        super().__init__(f"Delivery to channel {channel_id} failed: {details}")
