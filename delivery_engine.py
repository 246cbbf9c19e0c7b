"""
Chunked Delivery Engine
Splits a response, paces the chunks and sends each one through the
destination's fallback strategies
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

from delivery_backends import DeliveryChannel, DeliveryStrategy, select_backend
from delivery_throttler import DeliveryThrottler
from errors import BackendSendError, TotalDeliveryError
from message_splitter import MAX_CONTENT_LENGTH, MessageChunk, build_chunks
from message_tracker import RecentMessageCache
from personality_manager import Personality
from timers import LoopTimers, Timers

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DELAY = 750
DEFAULT_MEDIA_DELAY = 750
VIRTUAL_CONTENT = "[Message filtered as duplicate]"


class DeliveryState(Enum):
    PREPARING = "PREPARING"
    CHUNKING = "CHUNKING"
    SENDING = "SENDING"
    FALLBACK = "FALLBACK"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class VirtualMessage:
    """Stands in for a message that was never sent"""
    id: str
    content: str = VIRTUAL_CONTENT


@dataclass
class DeliveryResult:
    first_message: Any
    message_ids: List[str] = field(default_factory=list)
    is_virtual: bool = False
    is_duplicate: bool = False
    personality_name: Optional[str] = None


def create_virtual_result(personality_name: Optional[str] = None) -> DeliveryResult:
    message = VirtualMessage(id=f"virtual-{uuid.uuid4()}")
    return DeliveryResult(
        first_message=message,
        message_ids=[message.id],
        is_virtual=True,
        is_duplicate=True,
        personality_name=personality_name,
    )


def extract_multimodal(content: Any) -> Tuple[str, Optional[str], Optional[str]]:
    """
    Pull (text, image_url, audio_url) out of a response.
    Plain strings come back unchanged with no media.
    """
    if content is None:
        return "", None, None
    if not isinstance(content, list):
        return str(content), None, None

    texts = []
    image_url = None
    audio_url = None
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get('type')
        if item_type == 'text' and item.get('text'):
            texts.append(item['text'])
        elif item_type == 'image_url' and image_url is None:
            image_url = (item.get('image_url') or {}).get('url')
        elif item_type == 'audio_url' and audio_url is None:
            audio_url = (item.get('audio_url') or {}).get('url')

    return "\n".join(texts), image_url, audio_url


class ChunkedDeliveryEngine:
    """Sends one response as ordered chunks"""

    def __init__(self,
                 throttler: DeliveryThrottler,
                 recent_messages: Optional[RecentMessageCache] = None,
                 timers: Optional[Timers] = None,
                 chunk_delay: float = DEFAULT_CHUNK_DELAY,
                 media_delay: float = DEFAULT_MEDIA_DELAY,
                 bot_suffix: Optional[str] = None,
                 max_content_length: int = MAX_CONTENT_LENGTH):
        self.throttler = throttler
        self.timers = timers or LoopTimers()
        self.recent_messages = recent_messages or RecentMessageCache(self.timers)
        self.chunk_delay = chunk_delay
        self.media_delay = media_delay
        self.bot_suffix = bot_suffix
        self.max_content_length = max_content_length

    async def deliver(self, channel: DeliveryChannel, content: Any, personality: Personality,
                      files: Optional[List[Any]] = None,
                      embeds: Optional[List[Any]] = None) -> DeliveryResult:
        """
        Send content to channel as personality.

        Raises TotalDeliveryError when the first chunk can't be sent by any strategy.
        Later chunk failures are logged and the remaining chunks are still sent.
        """
        display_name = personality.standardized_name(self.bot_suffix)
        self._log_state(DeliveryState.PREPARING, channel, f"as {display_name}")

        text, image_url, audio_url = extract_multimodal(content)
        backend = select_backend(channel)
        strategies = backend.strategies(channel, display_name, personality.avatar_url, self.max_content_length)

        self._log_state(DeliveryState.CHUNKING, channel, f"via {backend.name} backend")
        chunks = build_chunks(text, files, embeds, backend.content_limit(display_name, self.max_content_length))

        if not chunks and not (image_url or audio_url):
            logger.warning(f"Nothing to deliver for {personality.full_name} in channel {channel.id}")
            return DeliveryResult(first_message=None, personality_name=personality.full_name)

        # Reserved before the first await so a concurrent delivery of the same response sees it
        own_texts = set()
        if text and not (files or embeds):
            if self.recent_messages.is_duplicate(text, display_name, channel.id):
                logger.warning(f"Response from {personality.full_name} was just sent to channel {channel.id}, skipping")
                return create_virtual_result(personality.full_name)
            self.recent_messages.record(text, display_name, channel.id)
            own_texts.add(text)

        delay = self.throttler.calculate_message_delay(channel.id)
        if delay > 0:
            logger.info(f"Waiting {delay:.0f}ms before sending to channel {channel.id}")
            await self.timers.sleep(delay)

        first_message = None
        message_ids: List[str] = []
        skipped = 0

        for chunk in chunks:
            if (chunk.text and chunk.text not in own_texts and not (chunk.files or chunk.embeds)
                    and self.recent_messages.is_duplicate(chunk.text, display_name, channel.id)):
                logger.warning(f"Skipping chunk {chunk.index + 1}/{len(chunks)}: identical message was just sent")
                skipped += 1
                continue

            if chunk.index > 0:
                await self.timers.sleep(self.chunk_delay)

            self._log_state(DeliveryState.SENDING, channel, f"chunk {chunk.index + 1}/{len(chunks)}")
            try:
                messages = await self._send_with_fallback(channel, strategies, chunk)
            except TotalDeliveryError as e:
                # Nothing of this response is visible yet, so the whole delivery failed
                if first_message is None:
                    self._log_state(DeliveryState.FAILED, channel, str(e))
                    if text in own_texts:
                        self.recent_messages.forget(text, display_name, channel.id)
                    raise
                logger.error(f"Chunk {chunk.index + 1}/{len(chunks)} not delivered, continuing: {e}")
                continue

            self._record_sent(channel, display_name, chunk.text)
            own_texts.add(chunk.text)
            message_ids.extend(str(m.id) for m in messages)
            if first_message is None:
                first_message = messages[0]

        media_text = f"[Audio: {audio_url}]" if audio_url else (f"[Image: {image_url}]" if image_url else None)
        if media_text:
            messages = await self._send_media(channel, strategies, media_text, display_name)
            message_ids.extend(str(m.id) for m in messages)
            if messages and first_message is None:
                first_message = messages[0]

        if first_message is None and skipped:
            logger.info(f"All chunks for {personality.full_name} were duplicates, returning virtual result")
            return create_virtual_result(personality.full_name)

        self._log_state(DeliveryState.DONE, channel, f"{len(message_ids)} message(s) sent")
        return DeliveryResult(
            first_message=first_message,
            message_ids=message_ids,
            personality_name=personality.full_name,
        )

    async def _send_with_fallback(self, channel: DeliveryChannel,
                                  strategies: List[DeliveryStrategy],
                                  chunk: MessageChunk) -> List[Any]:
        errors: List[BackendSendError] = []
        for position, strategy in enumerate(strategies):
            if position > 0:
                self._log_state(DeliveryState.FALLBACK, channel, f"trying {strategy.name}")
            try:
                return await strategy.send(chunk)
            except Exception as e:
                error = BackendSendError(strategy.name, e)
                logger.error(f"Send to channel {channel.id} failed: {error}")
                errors.append(error)

        raise TotalDeliveryError(channel.id, errors)

    async def _send_media(self, channel: DeliveryChannel, strategies: List[DeliveryStrategy],
                          media_text: str, display_name: str) -> List[Any]:
        await self.timers.sleep(self.media_delay)
        chunk = MessageChunk(index=0, is_first=False, is_last=True, text=media_text)
        try:
            messages = await self._send_with_fallback(channel, strategies, chunk)
        except TotalDeliveryError as e:
            logger.error(f"Media follow-up not delivered: {e}")
            return []
        self._record_sent(channel, display_name, media_text)
        return messages

    def _record_sent(self, channel: DeliveryChannel, display_name: str, text: str) -> None:
        self.throttler.update_channel_last_message_time(channel.id)
        if text:
            self.recent_messages.record(text, display_name, channel.id)

    @staticmethod
    def _log_state(state: DeliveryState, channel: DeliveryChannel, detail: str = "") -> None:
        logger.info(f"[{state.value}] channel {channel.id} {detail}".rstrip())
