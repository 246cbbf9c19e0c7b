"""Tests for chunked delivery with fallback and duplicate suppression."""

import pytest

from conftest import FakeChannel
from delivery_backends import ChannelKind, ProxyMode
from delivery_engine import (
    VIRTUAL_CONTENT,
    ChunkedDeliveryEngine,
    create_virtual_result,
    extract_multimodal,
)
from delivery_throttler import DeliveryThrottler
from errors import TotalDeliveryError
from message_tracker import RecentMessageCache

THREE_CHUNKS = "A" * 2000 + "B" * 2000 + "C" * 1000


def make_engine(timers, **kwargs):
    throttler = DeliveryThrottler(timers)
    engine = ChunkedDeliveryEngine(throttler, RecentMessageCache(timers), timers, **kwargs)
    return engine, throttler


class TestDeliver:
    """Test the happy paths."""

    @pytest.mark.asyncio
    async def test_short_message_single_proxy_send(self, timers, channel, personality):
        """Test a one-chunk response through the webhook."""
        engine, _ = make_engine(timers)

        result = await engine.deliver(channel, "Hello!", personality)

        assert result.message_ids == ["msg-1"]
        assert result.first_message.content == "Hello!"
        assert not result.is_virtual
        assert result.personality_name == "albert-einstein"
        [call] = channel.calls
        assert call.method == "proxy"
        assert call.display_name == "Albert"
        assert call.avatar_url == "https://example.com/albert.png"
        assert call.mode is ProxyMode.STANDARD

    @pytest.mark.asyncio
    async def test_long_message_three_chunks(self, timers, channel, personality):
        """Test ordering, chunk delay and attachment placement."""
        engine, _ = make_engine(timers)

        result = await engine.deliver(channel, "A" * 5000, personality, files=["file"], embeds=["embed"])

        assert result.message_ids == ["msg-1", "msg-2", "msg-3"]
        calls = channel.proxy_calls
        assert [len(c.content) for c in calls] == [2000, 2000, 1000]
        assert calls[0].files is None and calls[1].files is None
        assert calls[2].files == ["file"]
        assert calls[2].embeds == ["embed"]
        assert timers.sleeps == [750, 750]

    @pytest.mark.asyncio
    async def test_bot_suffix_in_display_name(self, timers, channel, personality):
        """Test that the configured suffix shows on proxied messages."""
        engine, _ = make_engine(timers, bot_suffix="Dev")

        await engine.deliver(channel, "Hello!", personality)

        assert channel.calls[0].display_name == "Albert | Dev"

    @pytest.mark.asyncio
    async def test_thread_delivery_scoped_to_thread(self, timers, personality):
        """Test that thread channels send through the thread."""
        channel = FakeChannel(ChannelKind.THREAD, channel_id="thread-9")
        engine, _ = make_engine(timers)

        await engine.deliver(channel, "Hello!", personality)

        assert channel.calls[0].thread_id == "thread-9"

    @pytest.mark.asyncio
    async def test_direct_message_delivery(self, timers, personality):
        """Test that DMs are sent with the name prefix and stay within the limit."""
        channel = FakeChannel(ChannelKind.DIRECT)
        engine, _ = make_engine(timers)

        await engine.deliver(channel, "word " * 900, personality)

        assert channel.proxy_calls == []
        assert len(channel.direct_calls) == 3
        for call in channel.direct_calls:
            assert call.content.startswith("**Albert:** ")
            assert len(call.content) <= 2000
            assert not call.content.endswith("...")

    @pytest.mark.asyncio
    async def test_nothing_to_deliver(self, timers, channel, personality):
        """Test that blank content sends nothing."""
        engine, _ = make_engine(timers)

        result = await engine.deliver(channel, "   ", personality)

        assert result.first_message is None
        assert result.message_ids == []
        assert channel.calls == []


class TestPacing:
    """Test channel pacing around deliveries."""

    @pytest.mark.asyncio
    async def test_waits_for_channel_pacing(self, timers, channel, personality):
        """Test that a recent send delays the next response once."""
        engine, throttler = make_engine(timers)
        throttler.update_channel_last_message_time(channel.id)
        timers.advance(1000)

        await engine.deliver(channel, "A" * 3000, personality)

        assert timers.sleeps == [2000, 750]

    @pytest.mark.asyncio
    async def test_successful_send_updates_pacing(self, timers, channel, personality):
        """Test that the channel's last send time is recorded."""
        engine, throttler = make_engine(timers)

        await engine.deliver(channel, "Hello!", personality)

        assert throttler.calculate_message_delay(channel.id) == 3000

    @pytest.mark.asyncio
    async def test_failed_attempts_do_not_update_pacing(self, timers, channel, personality):
        """Test that pacing is only touched by successful sends."""
        engine, throttler = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD, ProxyMode.ALTERNATE}
        channel.fail_direct = True

        with pytest.raises(TotalDeliveryError):
            await engine.deliver(channel, "Hello!", personality)

        assert throttler.calculate_message_delay(channel.id) == 0


class TestFallback:
    """Test the strategy chain and partial failures."""

    @pytest.mark.asyncio
    async def test_alternate_webhook_after_standard_failure(self, timers, channel, personality):
        """Test that the fresh webhook is tried second."""
        engine, _ = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD}

        result = await engine.deliver(channel, "Hello!", personality)

        assert [c.mode for c in channel.proxy_calls] == [ProxyMode.STANDARD, ProxyMode.ALTERNATE]
        assert channel.direct_calls == []
        assert result.message_ids == ["msg-1"]

    @pytest.mark.asyncio
    async def test_direct_fallback_after_two_proxy_failures(self, timers, channel, personality):
        """Test that the direct send is used once with the name prefix."""
        engine, _ = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD, ProxyMode.ALTERNATE}

        result = await engine.deliver(channel, "Hello!", personality)

        assert len(channel.proxy_calls) == 2
        [direct] = channel.direct_calls
        assert direct.content == "**Albert:** Hello!"
        assert result.first_message.content == "**Albert:** Hello!"

    @pytest.mark.asyncio
    async def test_first_chunk_total_failure_raises(self, timers, channel, personality):
        """Test that a first chunk nobody could send fails the delivery."""
        engine, _ = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD, ProxyMode.ALTERNATE}
        channel.fail_direct = True

        with pytest.raises(TotalDeliveryError) as exc_info:
            await engine.deliver(channel, THREE_CHUNKS, personality)

        assert exc_info.value.channel_id == channel.id
        assert "chan-1" in str(exc_info.value)
        assert [e.strategy for e in exc_info.value.errors] == ["proxy-standard", "proxy-alternate", "direct"]
        assert len(channel.calls) == 3

    @pytest.mark.asyncio
    async def test_later_chunk_failure_keeps_earlier_chunks(self, timers, channel, personality):
        """Test that a failing third chunk is skipped and the others are returned."""
        engine, _ = make_engine(timers)
        channel.fail_when = lambda content: content.endswith("C")

        result = await engine.deliver(channel, THREE_CHUNKS, personality)

        assert result.message_ids == ["msg-1", "msg-2"]
        assert result.first_message.content == "A" * 2000
        assert not result.is_virtual

    @pytest.mark.asyncio
    async def test_direct_fallback_keeps_full_chunk_text(self, timers, channel, personality):
        """Test that a full-size chunk sent directly overflows into a second message instead of being cut."""
        engine, _ = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD, ProxyMode.ALTERNATE}
        content = "a" * 1990 + "END_MARKER"

        result = await engine.deliver(channel, content, personality)

        prefix = "**Albert:** "
        direct = channel.direct_calls
        assert len(direct) == 2
        assert all(len(c.content) <= 2000 and c.content.startswith(prefix) for c in direct)
        assert "".join(c.content[len(prefix):] for c in direct) == content
        assert result.message_ids == ["msg-1", "msg-2"]

    @pytest.mark.asyncio
    async def test_direct_overflow_keeps_attachments_on_last_part(self, timers, channel, personality):
        """Test that files ride on the final part of an overflowing direct send."""
        engine, _ = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD, ProxyMode.ALTERNATE}

        await engine.deliver(channel, "a" * 2000, personality, files=["file"])

        first, second = channel.direct_calls
        assert first.files is None
        assert second.files == ["file"]

    @pytest.mark.asyncio
    async def test_failure_after_skipped_duplicate_raises(self, timers, channel, personality):
        """Test that a delivery with nothing sent fails even when its first chunk was skipped."""
        engine, _ = make_engine(timers)
        await engine.deliver(channel, "A" * 2000, personality)
        channel.fail_when = lambda content: "B" in content

        with pytest.raises(TotalDeliveryError):
            await engine.deliver(channel, "A" * 2000 + "\n\n" + "B" * 10, personality)

        channel.fail_when = None
        result = await engine.deliver(channel, "A" * 2000 + "\n\n" + "B" * 10, personality)
        assert result.first_message.content == "B" * 10


class TestDuplicates:
    """Test suppression of repeated chunks."""

    @pytest.mark.asyncio
    async def test_duplicate_response_returns_virtual_result(self, timers, channel, personality):
        """Test that an identical response is not sent twice."""
        engine, _ = make_engine(timers)
        await engine.deliver(channel, "Hello!", personality)
        calls_before = len(channel.calls)

        result = await engine.deliver(channel, "Hello!", personality)

        assert len(channel.calls) == calls_before
        assert result.is_virtual
        assert result.is_duplicate
        assert result.first_message.id.startswith("virtual-")
        assert result.first_message.content == VIRTUAL_CONTENT
        assert result.personality_name == "albert-einstein"

    @pytest.mark.asyncio
    async def test_same_text_after_window_is_sent(self, timers, channel, personality):
        """Test that duplicates are only suppressed within the window."""
        engine, _ = make_engine(timers)
        await engine.deliver(channel, "Hello!", personality)
        timers.advance(5000)

        result = await engine.deliver(channel, "Hello!", personality)

        assert not result.is_virtual
        assert len(channel.calls) == 2

    @pytest.mark.asyncio
    async def test_other_personality_not_duplicate(self, timers, channel, personality):
        """Test that the sender is part of the duplicate key."""
        engine, _ = make_engine(timers)
        await engine.deliver(channel, "Hello!", personality)
        personality.display_name = "Marie"

        result = await engine.deliver(channel, "Hello!", personality)

        assert not result.is_virtual

    @pytest.mark.asyncio
    async def test_all_chunks_recently_sent(self, timers, channel, personality):
        """Test that a new response made only of recently sent chunks is virtual."""
        engine, _ = make_engine(timers)
        await engine.deliver(channel, "A" * 2000, personality)
        calls_before = len(channel.calls)

        result = await engine.deliver(channel, "A" * 2000 + "\n\n" + "A" * 2000, personality)

        assert result.is_virtual
        assert len(channel.calls) == calls_before

    @pytest.mark.asyncio
    async def test_repeated_chunks_within_one_response_are_sent(self, timers, channel, personality):
        """Test that identical chunks of the same response are all delivered."""
        engine, _ = make_engine(timers)

        result = await engine.deliver(channel, "A" * 2000 + "\n\n" + "A" * 2000, personality)

        assert len(result.message_ids) == 2

    @pytest.mark.asyncio
    async def test_failed_delivery_can_be_retried(self, timers, channel, personality):
        """Test that a response that never went out isn't treated as a duplicate."""
        engine, _ = make_engine(timers)
        channel.fail_proxy_modes = {ProxyMode.STANDARD, ProxyMode.ALTERNATE}
        channel.fail_direct = True
        with pytest.raises(TotalDeliveryError):
            await engine.deliver(channel, "Hello!", personality)

        channel.fail_proxy_modes = set()
        channel.fail_direct = False
        result = await engine.deliver(channel, "Hello!", personality)

        assert not result.is_virtual
        assert result.message_ids == ["msg-1"]

    @pytest.mark.asyncio
    async def test_attachments_are_never_suppressed(self, timers, channel, personality):
        """Test that a repeated response carrying files is still sent."""
        engine, _ = make_engine(timers)
        await engine.deliver(channel, "Hello!", personality)

        result = await engine.deliver(channel, "Hello!", personality, files=["file"])

        assert not result.is_virtual
        assert channel.calls[-1].files == ["file"]

    def test_create_virtual_result(self):
        """Test the virtual result shape."""
        result = create_virtual_result("albert")
        assert result.message_ids == [result.first_message.id]
        assert result.is_virtual and result.is_duplicate


class TestMultimodal:
    """Test media follow-ups."""

    @pytest.mark.asyncio
    async def test_audio_follow_up_takes_priority(self, timers, channel, personality):
        """Test that audio is sent after the text and the image is dropped."""
        engine, _ = make_engine(timers)
        content = [
            {"type": "text", "text": "Listen to this"},
            {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
            {"type": "audio_url", "audio_url": {"url": "https://example.com/a.mp3"}},
        ]

        result = await engine.deliver(channel, content, personality)

        assert [c.content for c in channel.calls] == ["Listen to this", "[Audio: https://example.com/a.mp3]"]
        assert result.message_ids == ["msg-1", "msg-2"]
        assert timers.sleeps == [750]

    @pytest.mark.asyncio
    async def test_image_follow_up(self, timers, channel, personality):
        """Test that an image is sent when there is no audio."""
        engine, _ = make_engine(timers)
        content = [
            {"type": "text", "text": "Look"},
            {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
        ]

        await engine.deliver(channel, content, personality)

        assert channel.calls[-1].content == "[Image: https://example.com/a.png]"

    @pytest.mark.asyncio
    async def test_follow_up_failure_is_skipped(self, timers, channel, personality):
        """Test that a failed media follow-up doesn't fail the delivery."""
        engine, _ = make_engine(timers)
        channel.fail_when = lambda content: "[Audio:" in content
        content = [
            {"type": "text", "text": "Listen"},
            {"type": "audio_url", "audio_url": {"url": "https://example.com/a.mp3"}},
        ]

        result = await engine.deliver(channel, content, personality)

        assert result.message_ids == ["msg-1"]

    def test_extract_multimodal(self):
        """Test pulling text and media out of content."""
        assert extract_multimodal("plain") == ("plain", None, None)
        assert extract_multimodal(None) == ("", None, None)

        text, image, audio = extract_multimodal([
            {"type": "text", "text": "one"},
            {"type": "text", "text": "two"},
            {"type": "image_url", "image_url": {"url": "img"}},
        ])
        assert text == "one\ntwo"
        assert image == "img"
        assert audio is None
