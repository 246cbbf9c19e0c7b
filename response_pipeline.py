"""
Response Pipeline
Generation through the deduplicator, then chunked delivery, with a pending
marker held for the personality+channel while the response is produced
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from delivery_backends import DeliveryChannel
from delivery_engine import ChunkedDeliveryEngine, DeliveryResult
from delivery_throttler import DeliveryThrottler
from errors import BlackoutError, GenerationError, RelayError, TotalDeliveryError
from personality_manager import Personality
from request_deduplicator import RequestDeduplicator
from utils import create_request_id

logger = logging.getLogger(__name__)

GenerateFn = Callable[[Personality, Any, Optional[Dict[str, Any]]], Awaitable[Any]]


class ResponsePipeline:

    def __init__(self, generate: GenerateFn,
                 deduplicator: RequestDeduplicator,
                 throttler: DeliveryThrottler,
                 engine: ChunkedDeliveryEngine):
        self.generate = generate
        self.deduplicator = deduplicator
        self.throttler = throttler
        self.engine = engine

    async def respond(self, channel: DeliveryChannel, personality: Personality, content: Any,
                      context: Optional[Dict[str, Any]] = None,
                      files: Optional[List[Any]] = None,
                      embeds: Optional[List[Any]] = None) -> DeliveryResult:
        """
        Generate a response for content and deliver it to channel.

        Identical concurrent requests share one generation call. Raises
        BlackoutError, GenerationError or TotalDeliveryError.
        """
        name = personality.full_name
        request_id = create_request_id()
        self.throttler.register_pending_message(name, channel.id, request_id)

        try:
            try:
                handle = self.deduplicator.check_or_register(
                    name, content, context,
                    lambda: self.generate(personality, content, context)
                )
                # Shielded so one caller giving up doesn't cancel the shared call
                response = await asyncio.shield(handle)
            except BlackoutError:
                raise
            except Exception as e:
                self.throttler.clear_pending_message(name, channel.id, request_id)
                # Each caller gets its own error since the shared handle raises the same instance
                error = GenerationError(str(e), personality_name=name)
                error.superseded = self.throttler.has_pending_message(name, channel.id)
                if error.superseded:
                    logger.info(f"Generation for {name} failed but another request is still pending, staying quiet")
                raise error from e

            return await self.engine.deliver(channel, response, personality, files=files, embeds=embeds)
        finally:
            self.throttler.clear_pending_message(name, channel.id, request_id)

    @staticmethod
    def user_notice(error: BaseException) -> Optional[str]:
        """Text to show the user for a pipeline error, None when nothing should be posted"""
        if isinstance(error, BlackoutError):
            seconds = max(1, round(error.retry_after_ms / 1000))
            return (f"⏳ {error.personality_name} hit an error a moment ago. "
                    f"Please wait {seconds}s before asking the same thing again.")

        if isinstance(error, GenerationError):
            if error.superseded:
                return None
            who = error.personality_name or "The personality"
            return f"❌ {who} couldn't come up with a response. Please try again in a bit."

        if isinstance(error, TotalDeliveryError):
            return "❌ The response was generated but couldn't be posted in this channel."

        if isinstance(error, RelayError):
            return f"❌ {error}"

        return "❌ Something went wrong while responding."
