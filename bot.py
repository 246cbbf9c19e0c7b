"""
Discord Bot Implementation
Routes messages to personalities and delivers their responses through the relay pipeline
"""

import discord
from discord import app_commands
from discord.ext import commands
import asyncio
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime
import logging
import re

from config_manager import PipelineSettings
from delivery_engine import ChunkedDeliveryEngine
from delivery_throttler import DeliveryThrottler
from discord_channels import DiscordDeliveryChannel, WebhookCache
from errors import RelayError
from llm_providers import build_messages, create_provider
from message_tracker import RecentMessageCache
from personality_manager import Personality, PersonalityManager
from request_deduplicator import RequestDeduplicator
from response_pipeline import ResponsePipeline
from timers import LoopTimers

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TRIGGER_PATTERN = re.compile(r'^@(\S+)\s*(.*)$', re.DOTALL)


def build_content(text: str, attachments: List[Any]) -> Any:
    """Message text, or a multimodal list when images or audio are attached"""
    media = []
    for attachment in attachments:
        content_type = attachment.content_type or ''
        if content_type.startswith('image/'):
            media.append({"type": "image_url", "image_url": {"url": attachment.url}})
        elif content_type.startswith('audio/'):
            media.append({"type": "audio_url", "audio_url": {"url": attachment.url}})

    if not media:
        return text
    return [{"type": "text", "text": text}] + media


class PersonalityRelayBot:
    """Discord bot that speaks as configured personalities"""

    def __init__(self, config: Dict[str, Any], personality_manager: Optional[PersonalityManager] = None):
        self.config = config
        self.settings = PipelineSettings.from_config(config)

        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True

        self.bot = commands.Bot(
            command_prefix='!',
            intents=intents,
            description="Personality Relay"
        )

        self.llm_provider = create_provider(
            config['llm_provider'],
            base_url=config.get('llm_base_url'),
            model_name=config.get('model_name')
        )
        self.personality_manager = personality_manager or PersonalityManager()
        self.bot_suffix = config.get('bot_suffix') or None

        timers = LoopTimers()
        self.deduplicator = RequestDeduplicator(
            timers,
            request_ttl=self.settings.request_ttl_ms,
            error_blackout_duration=self.settings.error_blackout_ms,
            cleanup_interval=self.settings.cleanup_interval_ms
        )
        self.throttler = DeliveryThrottler(
            timers,
            max_error_wait_time=self.settings.max_error_wait_ms,
            min_message_delay=self.settings.min_message_delay_ms
        )
        self.recent_messages = RecentMessageCache(timers, window=self.settings.duplicate_window_ms)
        self.engine = ChunkedDeliveryEngine(
            self.throttler,
            self.recent_messages,
            timers,
            chunk_delay=self.settings.chunk_delay_ms,
            media_delay=self.settings.media_delay_ms,
            bot_suffix=self.bot_suffix,
            max_content_length=self.settings.max_content_length
        )
        self.pipeline = ResponsePipeline(self._generate_response, self.deduplicator, self.throttler, self.engine)
        self.webhooks = WebhookCache(self.settings.webhook_name)

        self._setup_events()
        self._setup_commands()

    async def resolve_trigger(self, message: discord.Message) -> Optional[Tuple[Personality, str]]:
        """Personality addressed by the message and the text meant for it"""
        match = TRIGGER_PATTERN.match(message.content or '')
        if match:
            personality = self.personality_manager.get_personality(match.group(1))
            if personality is not None:
                return personality, match.group(2).strip()

        if message.reference and message.reference.message_id:
            try:
                replied = message.reference.resolved
                if not isinstance(replied, discord.Message):
                    replied = await message.channel.fetch_message(message.reference.message_id)
            except discord.HTTPException as e:
                logger.warning(f"Couldn't fetch replied-to message {message.reference.message_id}: {e}")
                return None

            if replied.webhook_id:
                personality = self.personality_manager.find_by_display_name(replied.author.name)
                if personality is not None:
                    return personality, (message.content or '').strip()

        return None

    def _setup_events(self):

        @self.bot.event
        async def on_ready():
            logger.info(f'Bot logged in as {self.bot.user}')
            print(f'\n✅ Bot is online as {self.bot.user}')
            print(f'📁 Using config: {self.config.get("_config_name", "unknown")}')
            print(f'🎭 {len(self.personality_manager.personalities)} personality(ies) loaded')
            print(f'\n📱 Ready!')
            print(f'   • Start a message with @name to talk to a personality')
            print(f'   • Reply to a personality\'s message to keep talking')
            print(f'   • Add personalities with /personality add')

            try:
                await self.bot.tree.sync()
                print(f'\n✅ Commands synced!')
            except discord.HTTPException as e:
                logger.error(f'Failed to sync commands: {e}')
                print(f'\n⚠️  Commands might take a few minutes to appear')

        @self.bot.event
        async def on_message(message: discord.Message):

            # Our own webhook posts would otherwise trigger replies to themselves
            if message.author == self.bot.user or message.webhook_id:
                return

            trigger = await self.resolve_trigger(message)
            if trigger is not None:
                personality, text = trigger
                await self.handle_personality_message(message, personality, text)

            await self.bot.process_commands(message)

    async def handle_personality_message(self, message: discord.Message, personality: Personality, text: str):
        content = build_content(text, list(message.attachments))
        if not content:
            return

        context = {
            'user_id': message.author.id,
            'channel_id': message.channel.id,
        }
        channel = DiscordDeliveryChannel(message.channel, self.webhooks)

        try:
            async with message.channel.typing():
                result = await self.pipeline.respond(channel, personality, content, context)
        except RelayError as e:
            logger.error(f"Couldn't respond as {personality.full_name} in channel {message.channel.id}: {e}")
            notice = ResponsePipeline.user_notice(e)
            if notice:
                try:
                    await message.reply(notice)
                except discord.HTTPException as reply_error:
                    logger.error(f"Couldn't post error notice: {reply_error}")
            return

        if result.is_virtual:
            logger.info(f"Response from {personality.full_name} was a duplicate, nothing posted")
        else:
            logger.info(f"{personality.full_name} replied with {len(result.message_ids)} message(s)")

    def _setup_commands(self):

        personality_group = app_commands.Group(name="personality", description="Manage personalities")

        @personality_group.command(name="add", description="Add a personality")
        @app_commands.describe(
            name="Unique name, e.g. 'albert-einstein'",
            system_prompt="How the personality should behave",
            display_name="Name shown on messages",
            avatar_url="Image URL for the avatar",
            aliases="Other names, comma separated"
        )
        async def personality_add(
            interaction: discord.Interaction,
            name: str,
            system_prompt: str,
            display_name: Optional[str] = None,
            avatar_url: Optional[str] = None,
            aliases: Optional[str] = None
        ):
            personality = Personality(
                full_name=name,
                display_name=display_name,
                avatar_url=avatar_url,
                system_prompt=system_prompt,
                aliases=[a.strip() for a in (aliases or '').split(',') if a.strip()]
            )
            success, response = self.personality_manager.add_personality(personality)
            await interaction.response.send_message(response, ephemeral=not success)

        @personality_group.command(name="remove", description="Remove a personality")
        @app_commands.describe(name="Name or alias")
        async def personality_remove(interaction: discord.Interaction, name: str):
            success, response = self.personality_manager.remove_personality(name)
            await interaction.response.send_message(response, ephemeral=not success)

        @personality_group.command(name="list", description="List personalities")
        async def personality_list(interaction: discord.Interaction):
            embed = discord.Embed(
                title="🎭 Personalities",
                description=self.personality_manager.list_personalities(),
                color=discord.Color.blue()
            )
            await interaction.response.send_message(embed=embed)

        self.bot.tree.add_command(personality_group)

        @self.bot.tree.command(name="status", description="Check bot status")
        async def status_command(interaction: discord.Interaction):
            await interaction.response.defer()

            loop = asyncio.get_running_loop()
            connected = await loop.run_in_executor(None, self.llm_provider.test_connection)
            llm_status = "✅ Connected" if connected else "❌ Disconnected"

            embed = discord.Embed(
                title="🤖 Bot Status",
                description=f"Configuration: **{self.config.get('_config_name', 'unknown')}**",
                color=discord.Color.green() if connected else discord.Color.red()
            )
            embed.add_field(name="LLM Provider", value=self.llm_provider.name, inline=True)
            embed.add_field(name="Model", value=self.config.get('model_name') or 'default', inline=True)
            embed.add_field(name="LLM Status", value=llm_status, inline=True)
            embed.add_field(name="Personalities", value=str(len(self.personality_manager.personalities)), inline=True)
            embed.add_field(name="Requests In Flight", value=str(self.deduplicator.pending_count), inline=True)
            embed.add_field(name="Paused After Errors", value=str(self.deduplicator.blackout_count), inline=True)
            embed.add_field(name="Webhooks", value=str(len(self.webhooks)), inline=True)
            embed.set_footer(text=f"Uptime: {self._get_uptime()}")

            await interaction.followup.send(embed=embed)

    async def _generate_response(self, personality: Personality, content: Any,
                                 context: Optional[Dict[str, Any]]) -> str:
        """Run LLM generation in executor to avoid blocking"""
        messages = build_messages(personality.system_prompt, content)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.llm_provider.generate_response, messages)

    def _get_uptime(self) -> str:
        if not hasattr(self, 'start_time'):
            return "Just started"

        delta = datetime.now() - self.start_time
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)

        if hours > 0:
            return f"{hours}h {minutes}m"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"

    async def start(self):
        """Start the Discord bot"""
        self.start_time = datetime.now()
        await self.bot.start(self.config['discord_token'])

    async def shutdown(self):
        """Gracefully shutdown the bot"""
        print("\n🛑 Shutting down bot...")

        in_flight = self.deduplicator.pending_count
        if in_flight:
            print(f"   ⚠️  {in_flight} response(s) still being generated (will not be delivered)")

        self.deduplicator.clear()
        self.throttler.clear()
        self.recent_messages.clear()
        await self.webhooks.close()

        await self.bot.close()
