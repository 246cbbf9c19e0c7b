"""
Discord adapters for the delivery pipeline
Wraps discord.py channels and keeps one proxy webhook per parent channel
"""

import logging
from typing import Any, Dict, List, Optional

import aiohttp
import discord

from delivery_backends import ChannelKind, DeliveryChannel, ProxyMode
from errors import RelayError

logger = logging.getLogger(__name__)

UNKNOWN_WEBHOOK = 10015


class WebhookCache:
    """Reuses one webhook per parent channel, recreating it when asked or when Discord forgets it"""

    def __init__(self, webhook_name: str = "Personality Relay"):
        self.webhook_name = webhook_name
        self._webhooks: Dict[int, discord.Webhook] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _bind(self, webhook: discord.Webhook) -> discord.Webhook:
        # Sends go through our own aiohttp session
        return discord.Webhook.partial(webhook.id, webhook.token, session=self._get_session())

    async def get_webhook(self, parent: Any, fresh: bool = False) -> discord.Webhook:
        if fresh:
            await self._drop(parent)
        elif parent.id in self._webhooks:
            return self._webhooks[parent.id]

        webhook = None
        if not fresh:
            for existing in await parent.webhooks():
                if existing.name == self.webhook_name and existing.token:
                    webhook = existing
                    break

        if webhook is None:
            webhook = await parent.create_webhook(name=self.webhook_name, reason="Personality proxy messages")
            logger.info(f"Created webhook for channel {parent.id}")

        bound = self._bind(webhook)
        self._webhooks[parent.id] = bound
        return bound

    def invalidate(self, parent_id: int) -> None:
        if self._webhooks.pop(parent_id, None) is not None:
            logger.info(f"Dropped cached webhook for channel {parent_id}")

    async def _drop(self, parent: Any) -> None:
        webhook = self._webhooks.pop(parent.id, None)
        if webhook is None:
            return
        try:
            await webhook.delete(reason="Replacing failed proxy webhook")
        except discord.HTTPException as e:
            logger.warning(f"Couldn't delete old webhook for channel {parent.id}: {e}")

    def __len__(self) -> int:
        return len(self._webhooks)

    async def close(self) -> None:
        self._webhooks.clear()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def channel_kind(channel: Any) -> ChannelKind:
    if isinstance(channel, discord.DMChannel):
        return ChannelKind.DIRECT
    if isinstance(channel, discord.Thread):
        return ChannelKind.THREAD
    return ChannelKind.TEXT


class DiscordDeliveryChannel(DeliveryChannel):
    """A discord.py channel, thread or DM seen as a delivery destination"""

    def __init__(self, channel: Any, webhooks: WebhookCache):
        self.channel = channel
        self.webhooks = webhooks
        self._kind = channel_kind(channel)

    @property
    def id(self) -> str:
        return str(self.channel.id)

    @property
    def kind(self) -> ChannelKind:
        return self._kind

    def _webhook_parent(self) -> Any:
        if self._kind is ChannelKind.THREAD:
            return self.channel.parent
        if self._kind is ChannelKind.DIRECT:
            return None
        return self.channel

    async def send_proxy_identity(self, content: str, display_name: str, avatar_url: Optional[str],
                                  thread_id: Optional[str] = None,
                                  files: Optional[List[Any]] = None,
                                  embeds: Optional[List[Any]] = None,
                                  mode: ProxyMode = ProxyMode.STANDARD) -> Any:
        parent = self._webhook_parent()
        if parent is None or not hasattr(parent, 'create_webhook'):
            raise RelayError(f"Channel {self.id} doesn't support webhooks")

        webhook = await self.webhooks.get_webhook(parent, fresh=mode is ProxyMode.ALTERNATE)

        kwargs: Dict[str, Any] = {
            'content': content,
            'username': display_name,
            'wait': True,
        }
        if avatar_url:
            kwargs['avatar_url'] = avatar_url
        if thread_id:
            kwargs['thread'] = discord.Object(id=int(thread_id))
        if files:
            kwargs['files'] = files
        if embeds:
            kwargs['embeds'] = embeds

        try:
            return await webhook.send(**kwargs)
        except discord.NotFound as e:
            if e.code == UNKNOWN_WEBHOOK:
                self.webhooks.invalidate(parent.id)
            raise

    async def send_direct(self, content: str,
                          files: Optional[List[Any]] = None,
                          embeds: Optional[List[Any]] = None) -> Any:
        kwargs: Dict[str, Any] = {'content': content}
        if files:
            kwargs['files'] = files
        if embeds:
            kwargs['embeds'] = embeds
        return await self.channel.send(**kwargs)
