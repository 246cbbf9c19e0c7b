"""
Recently sent message tracking
Used to skip a chunk that was just sent by the same sender to the same channel
"""

import hashlib
from typing import Dict, Optional

from timers import LoopTimers, Timers

DUPLICATE_WINDOW = 5000


def hash_message(content: str, username: str, channel_id) -> str:
    """Stable hash of a message's text, sender and destination"""
    payload = f"{channel_id}\x00{username}\x00{content}"
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


class RecentMessageCache:
    """Remembers message hashes for a short window"""

    def __init__(self, timers: Optional[Timers] = None, window: float = DUPLICATE_WINDOW):
        self.timers = timers or LoopTimers()
        self.window = window
        self._sent: Dict[str, float] = {}  # hash -> sent_at

    def is_duplicate(self, content: str, username: str, channel_id) -> bool:
        self._prune()
        return hash_message(content, username, channel_id) in self._sent

    def record(self, content: str, username: str, channel_id) -> None:
        self._sent[hash_message(content, username, channel_id)] = self.timers.now()

    def forget(self, content: str, username: str, channel_id) -> None:
        self._sent.pop(hash_message(content, username, channel_id), None)

    def clear(self) -> None:
        self._sent.clear()

    def __len__(self) -> int:
        return len(self._sent)

    def _prune(self) -> None:
        cutoff = self.timers.now() - self.window
        expired = [h for h, sent_at in self._sent.items() if sent_at <= cutoff]
        for message_hash in expired:
            del self._sent[message_hash]
