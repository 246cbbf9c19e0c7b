"""
Delivery Throttler
Tracks responses that are still being produced and paces messages per channel
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from timers import LoopTimers, TimerHandle, Timers

logger = logging.getLogger(__name__)

MAX_ERROR_WAIT_TIME = 60000
MIN_MESSAGE_DELAY = 3000


@dataclass
class PendingMessageMarker:
    timestamp: float
    request_id: str
    expiry: Optional[TimerHandle] = None


class DeliveryThrottler:
    """Per personality+channel pending markers and per channel minimum message spacing"""

    def __init__(self,
                 timers: Optional[Timers] = None,
                 max_error_wait_time: float = MAX_ERROR_WAIT_TIME,
                 min_message_delay: float = MIN_MESSAGE_DELAY):
        self.timers = timers or LoopTimers()
        self.max_error_wait_time = max_error_wait_time
        self.min_message_delay = min_message_delay

        # One marker per in-flight request so a newer request never hides an older one
        self._pending_messages: Dict[Tuple[str, str], Dict[str, PendingMessageMarker]] = {}
        self._channel_last_sent: Dict[str, float] = {}

    @staticmethod
    def _make_key(personality: str, channel_id) -> Tuple[str, str]:
        return (personality.lower(), str(channel_id))

    def has_pending_message(self, personality: str, channel_id) -> bool:
        """True while any request for this personality+channel is still producing a response"""
        key = self._make_key(personality, channel_id)
        markers = self._pending_messages.get(key)
        if not markers:
            return False

        cutoff = self.timers.now() - self.max_error_wait_time
        for request_id in [r for r, marker in markers.items() if marker.timestamp < cutoff]:
            self._remove(key, request_id)
        return key in self._pending_messages

    def register_pending_message(self, personality: str, channel_id, request_id: str) -> None:
        key = self._make_key(personality, channel_id)
        self._remove(key, request_id)

        marker = PendingMessageMarker(timestamp=self.timers.now(), request_id=request_id)
        marker.expiry = self.timers.call_later(
            self.max_error_wait_time,
            lambda: self._expire(key, request_id)
        )
        self._pending_messages.setdefault(key, {})[request_id] = marker
        logger.debug(f"Registered pending message {request_id} for {personality} in channel {channel_id}")

    def clear_pending_message(self, personality: str, channel_id, request_id: Optional[str] = None) -> bool:
        """Remove the marker for request_id, or every marker for the pair when no id is given"""
        key = self._make_key(personality, channel_id)
        markers = self._pending_messages.get(key)
        if not markers:
            return False

        if request_id is None:
            for pending_id in list(markers):
                self._remove(key, pending_id)
            return True

        if request_id not in markers:
            logger.debug(f"No pending message {request_id} for {personality} in channel {channel_id}")
            return False

        self._remove(key, request_id)
        return True

    def calculate_message_delay(self, channel_id) -> float:
        last_sent = self._channel_last_sent.get(str(channel_id))
        if last_sent is None:
            return 0
        elapsed = self.timers.now() - last_sent
        return max(0, self.min_message_delay - elapsed)

    def update_channel_last_message_time(self, channel_id) -> None:
        self._channel_last_sent[str(channel_id)] = self.timers.now()

    def clear(self) -> None:
        for key, markers in list(self._pending_messages.items()):
            for request_id in list(markers):
                self._remove(key, request_id)
        self._channel_last_sent.clear()

    def _expire(self, key: Tuple[str, str], request_id: str) -> None:
        if request_id in self._pending_messages.get(key, {}):
            self._remove(key, request_id)
            logger.info(f"Pending message {request_id} expired after {self.max_error_wait_time}ms")

    def _remove(self, key: Tuple[str, str], request_id: str) -> None:
        markers = self._pending_messages.get(key)
        if not markers:
            return
        marker = markers.pop(request_id, None)
        if marker is not None and marker.expiry is not None:
            marker.expiry.cancel()
        if not markers:
            del self._pending_messages[key]
