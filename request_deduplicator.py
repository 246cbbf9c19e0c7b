"""
Request Deduplicator
Shares one in-flight generation call between identical requests and
blacks out signatures whose generation recently failed
"""

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from errors import BlackoutError
from timers import LoopTimers, TimerHandle, Timers

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TTL = 30000
DEFAULT_ERROR_BLACKOUT_DURATION = 60000
DEFAULT_CLEANUP_INTERVAL = 60000


def normalize_content(content: Any) -> str:
    """Collapse whitespace in text; flatten multimodal lists to text plus media URLs"""
    if content is None:
        return ""

    if isinstance(content, str):
        return re.sub(r'\s+', ' ', content).strip()

    if isinstance(content, list):
        parts = []
        for item in content:
            if not isinstance(item, dict):
                parts.append(str(item))
                continue
            item_type = item.get('type')
            if item_type == 'text':
                parts.append(item.get('text', ''))
            elif item_type == 'image_url':
                parts.append(f"IMG:{item.get('image_url', {}).get('url', '')}")
            elif item_type == 'audio_url':
                parts.append(f"AUD:{item.get('audio_url', {}).get('url', '')}")
        return normalize_content(' '.join(parts))

    return normalize_content(str(content))


def create_signature(personality_name: str, content: Any, context: Optional[Dict[str, Any]] = None) -> str:
    """
    Build the dedup key for a request.
    Only these context fields take part, every other key is ignored:
      user_id, conversation_id (falls back to channel_id), has_user_auth
    """
    context = context or {}
    key_fields = {
        'personality': (personality_name or '').strip().lower(),
        'content': normalize_content(content),
        'user_id': str(context['user_id']) if context.get('user_id') is not None else None,
        'conversation_id': str(context.get('conversation_id') or context.get('channel_id') or '') or None,
        'has_user_auth': bool(context.get('user_auth')),
    }
    digest = hashlib.sha256(json.dumps(key_fields, sort_keys=True).encode('utf-8')).hexdigest()
    return f"{key_fields['personality']}:{digest[:32]}"


@dataclass
class PendingRequest:
    handle: asyncio.Future
    registered_at: float
    personality_name: str


class RequestDeduplicator:
    """In-flight request cache with failure blackouts and a lazy TTL sweeper"""

    def __init__(self,
                 timers: Optional[Timers] = None,
                 request_ttl: float = DEFAULT_REQUEST_TTL,
                 error_blackout_duration: float = DEFAULT_ERROR_BLACKOUT_DURATION,
                 cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL):
        self.timers = timers or LoopTimers()
        self.request_ttl = request_ttl
        self.error_blackout_duration = error_blackout_duration
        self.cleanup_interval = cleanup_interval

        self._pending: Dict[str, PendingRequest] = {}
        self._blackouts: Dict[str, float] = {}  # signature -> expires_at
        self._sweep_handle: Optional[TimerHandle] = None

        logger.info(
            f"RequestDeduplicator initialized with requestTTL={request_ttl}ms, "
            f"errorBlackoutDuration={error_blackout_duration}ms, cleanupInterval={cleanup_interval}ms"
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def blackout_count(self) -> int:
        return len(self._blackouts)

    def check_duplicate(self, personality_name: str, content: Any,
                        context: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Future]:
        """
        Return the in-flight handle for this request, or None if there is none.
        Raises BlackoutError if the signature failed recently.
        """
        signature = create_signature(personality_name, content, context)
        self._raise_if_blacked_out(signature, personality_name)

        pending = self._pending.get(signature)
        if pending is not None:
            logger.info(f"Duplicate request detected for {personality_name}, reusing in-flight handle")
            return pending.handle
        return None

    def register_pending(self, personality_name: str, content: Any,
                         context: Optional[Dict[str, Any]], handle: Any) -> str:
        """
        Track handle as the in-flight request for its signature and return the signature.
        Callers using check_duplicate first must not await between the two calls.
        """
        signature = create_signature(personality_name, content, context)
        future = asyncio.ensure_future(handle)
        self._pending[signature] = PendingRequest(
            handle=future,
            registered_at=self.timers.now(),
            personality_name=personality_name,
        )
        future.add_done_callback(
            lambda settled: self._on_settled(signature, personality_name, settled)
        )
        self._ensure_sweeper()
        logger.debug(f"Registered pending request {signature}")
        return signature

    def check_or_register(self, personality_name: str, content: Any,
                          context: Optional[Dict[str, Any]],
                          start: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """
        Atomic check-then-register. Returns the shared handle for this request,
        calling start() only when nothing is in flight for the signature.
        """
        existing = self.check_duplicate(personality_name, content, context)
        if existing is not None:
            return existing

        handle = asyncio.ensure_future(start())
        self.register_pending(personality_name, content, context, handle)
        return handle

    def mark_failed(self, personality_name: str, content: Any,
                    context: Optional[Dict[str, Any]] = None) -> str:
        """Black out a signature without a registered handle"""
        signature = create_signature(personality_name, content, context)
        self._add_blackout(signature, personality_name)
        self._ensure_sweeper()
        return signature

    def is_blacked_out(self, personality_name: str, content: Any,
                       context: Optional[Dict[str, Any]] = None) -> bool:
        signature = create_signature(personality_name, content, context)
        return self._blackout_remaining(signature) > 0

    def cleanup_stale_entries(self) -> None:
        """Drop pending requests older than request_ttl and expired blackouts"""
        now = self.timers.now()

        stale = [sig for sig, pending in self._pending.items()
                 if now - pending.registered_at > self.request_ttl]
        for signature in stale:
            pending = self._pending.pop(signature)
            logger.warning(
                f"Removed stale pending request for {pending.personality_name} "
                f"after {now - pending.registered_at:.0f}ms"
            )

        expired = [sig for sig, expires_at in self._blackouts.items() if now >= expires_at]
        for signature in expired:
            del self._blackouts[signature]

        if stale or expired:
            logger.info(f"Cleanup removed {len(stale)} stale request(s) and {len(expired)} expired blackout(s)")

    def clear(self) -> None:
        """Forget everything and stop the sweeper (shutdown and tests)"""
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
        self._pending.clear()
        self._blackouts.clear()

    def _on_settled(self, signature: str, personality_name: str, handle: asyncio.Future) -> None:
        current = self._pending.get(signature)
        if current is not None and current.handle is handle:
            del self._pending[signature]

        if handle.cancelled():
            logger.info(f"Pending request for {personality_name} was cancelled")
            return

        error = handle.exception()
        if error is not None:
            logger.error(f"Generation failed for {personality_name}: {error}")
            self._add_blackout(signature, personality_name)

    def _add_blackout(self, signature: str, personality_name: str) -> None:
        expires_at = self.timers.now() + self.error_blackout_duration
        self._blackouts[signature] = expires_at
        logger.warning(f"Blackout for {personality_name} until +{self.error_blackout_duration}ms")

    def _blackout_remaining(self, signature: str) -> float:
        expires_at = self._blackouts.get(signature)
        if expires_at is None:
            return 0
        remaining = expires_at - self.timers.now()
        if remaining <= 0:
            del self._blackouts[signature]
            return 0
        return remaining

    def _raise_if_blacked_out(self, signature: str, personality_name: str) -> None:
        remaining = self._blackout_remaining(signature)
        if remaining > 0:
            raise BlackoutError(personality_name, signature, remaining)

    def _ensure_sweeper(self) -> None:
        if self._sweep_handle is None:
            self._sweep_handle = self.timers.call_later(self.cleanup_interval, self._run_sweep)

    def _run_sweep(self) -> None:
        self._sweep_handle = None
        try:
            self.cleanup_stale_entries()
        except Exception as e:
            logger.error(f"Error during request cleanup: {e}")

        # Reschedule only while there is something left to sweep
        if self._pending or self._blackouts:
            self._ensure_sweeper()
