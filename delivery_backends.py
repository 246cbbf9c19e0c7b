"""
Delivery Backends
Each destination kind has an ordered list of strategies to try for every chunk
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from message_splitter import MAX_CONTENT_LENGTH, MessageChunk, split_message
from utils import sanitize_message

logger = logging.getLogger(__name__)


class ChannelKind(Enum):
    TEXT = "text"
    THREAD = "thread"
    DIRECT = "direct"


class ProxyMode(Enum):
    STANDARD = "standard"
    ALTERNATE = "alternate"  # retry through a freshly created webhook


class DeliveryChannel(ABC):
    """A destination the engine can send to, wrapping the chat platform"""

    @property
    @abstractmethod
    def id(self) -> str:
        pass

    @property
    @abstractmethod
    def kind(self) -> ChannelKind:
        pass

    @abstractmethod
    async def send_proxy_identity(self, content: str, display_name: str, avatar_url: Optional[str],
                                  thread_id: Optional[str] = None,
                                  files: Optional[List[Any]] = None,
                                  embeds: Optional[List[Any]] = None,
                                  mode: ProxyMode = ProxyMode.STANDARD) -> Any:
        """Send under the personality's name and avatar; returns the sent message"""
        pass

    @abstractmethod
    async def send_direct(self, content: str,
                          files: Optional[List[Any]] = None,
                          embeds: Optional[List[Any]] = None) -> Any:
        """Send as the bot itself; returns the sent message"""
        pass


@dataclass
class DeliveryStrategy:
    name: str
    send: Callable[[MessageChunk], Awaitable[List[Any]]]  # every message sent for the chunk, in order


def direct_prefix(display_name: str) -> str:
    return f"**{display_name}:** "


def format_direct(display_name: str, text: str, limit: int = MAX_CONTENT_LENGTH) -> str:
    """Text sent as the bot with the personality's name in front"""
    formatted = direct_prefix(display_name) + (text or "")
    if len(formatted) > limit:
        logger.warning(f"Direct message for {display_name} is {len(formatted)} characters, clipping to {limit}")
    return sanitize_message(formatted, limit)


def _direct_strategy(channel: DeliveryChannel, display_name: str,
                     max_length: int = MAX_CONTENT_LENGTH) -> DeliveryStrategy:
    room = max_length - len(direct_prefix(display_name))

    async def send(chunk: MessageChunk):
        # A chunk sized for proxy sends can overflow once the name prefix is added
        pieces = split_message(chunk.text, room) or [chunk.text]
        messages = []
        for position, piece in enumerate(pieces):
            is_last = position == len(pieces) - 1
            try:
                messages.append(await channel.send_direct(
                    format_direct(display_name, piece, max_length),
                    files=(chunk.files or None) if is_last else None,
                    embeds=(chunk.embeds or None) if is_last else None,
                ))
            except Exception as e:
                if not messages:
                    raise
                logger.error(f"Overflow part {position + 1}/{len(pieces)} not delivered to {channel.id}: {e}")
                break
        return messages
    return DeliveryStrategy(name="direct", send=send)


def _proxy_strategy(channel: DeliveryChannel, display_name: str, avatar_url: Optional[str],
                    mode: ProxyMode, thread_id: Optional[str] = None) -> DeliveryStrategy:
    async def send(chunk: MessageChunk):
        message = await channel.send_proxy_identity(
            chunk.text,
            display_name,
            avatar_url,
            thread_id=thread_id,
            files=chunk.files or None,
            embeds=chunk.embeds or None,
            mode=mode,
        )
        return [message]
    scope = "thread-" if thread_id else ""
    return DeliveryStrategy(name=f"{scope}proxy-{mode.value}", send=send)


class DeliveryBackend(ABC):
    """Picks the strategies used for one kind of destination"""

    name = "base"

    @abstractmethod
    def strategies(self, channel: DeliveryChannel, display_name: str, avatar_url: Optional[str],
                   max_length: int = MAX_CONTENT_LENGTH) -> List[DeliveryStrategy]:
        """Strategies in the order they should be tried"""
        pass

    def content_limit(self, display_name: str, max_length: int = MAX_CONTENT_LENGTH) -> int:
        return max_length


class ProxyIdentityBackend(DeliveryBackend):
    """Guild text channel: webhook, fresh webhook, then plain message"""

    name = "proxy"

    def strategies(self, channel, display_name, avatar_url, max_length=MAX_CONTENT_LENGTH):
        return [
            _proxy_strategy(channel, display_name, avatar_url, ProxyMode.STANDARD),
            _proxy_strategy(channel, display_name, avatar_url, ProxyMode.ALTERNATE),
            _direct_strategy(channel, display_name, max_length),
        ]


class ThreadBackend(DeliveryBackend):
    """Thread: the parent channel's webhook scoped to the thread, then plain message"""

    name = "thread"

    def strategies(self, channel, display_name, avatar_url, max_length=MAX_CONTENT_LENGTH):
        return [
            _proxy_strategy(channel, display_name, avatar_url, ProxyMode.STANDARD, thread_id=channel.id),
            _proxy_strategy(channel, display_name, avatar_url, ProxyMode.ALTERNATE, thread_id=channel.id),
            _direct_strategy(channel, display_name, max_length),
        ]


class DirectMessageBackend(DeliveryBackend):
    """DMs have no webhooks so every chunk carries the name prefix"""

    name = "direct"

    def strategies(self, channel, display_name, avatar_url, max_length=MAX_CONTENT_LENGTH):
        return [_direct_strategy(channel, display_name, max_length)]

    def content_limit(self, display_name: str, max_length: int = MAX_CONTENT_LENGTH) -> int:
        return max_length - len(direct_prefix(display_name))


_BACKENDS = {
    ChannelKind.TEXT: ProxyIdentityBackend(),
    ChannelKind.THREAD: ThreadBackend(),
    ChannelKind.DIRECT: DirectMessageBackend(),
}


def select_backend(channel: DeliveryChannel) -> DeliveryBackend:
    backend = _BACKENDS.get(channel.kind)
    if backend is None:
        logger.warning(f"Unknown channel kind {channel.kind} for {channel.id}, sending directly")
        return _BACKENDS[ChannelKind.DIRECT]
    return backend
