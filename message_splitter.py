"""
Message Splitting
Breaks long responses into Discord-sized chunks without breaking code blocks
"""

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

MAX_CONTENT_LENGTH = 2000
FENCE = "```"
LANGUAGE_TAG = re.compile(r"[\w+#.-]{1,20}")

# Preferred break points, best first
SEPARATORS = ("\n\n", "\n", ". ", " ")


@dataclass
class MessageChunk:
    """One platform-sized slice of a response"""
    index: int
    is_first: bool
    is_last: bool
    text: str
    files: List[Any] = field(default_factory=list)
    embeds: List[Any] = field(default_factory=list)


def _find_break(text: str, limit: int, separators: Sequence[str] = SEPARATORS, minimum: int = 1) -> int:
    window = text[:limit]

    # A late break on a weaker boundary beats a tiny chunk on a strong one
    for separator in separators:
        index = window.rfind(separator)
        if index >= max(minimum, limit // 2):
            return index + len(separator)

    for separator in separators:
        index = window.rfind(separator)
        if index >= minimum:
            return index + len(separator)

    return limit


def _unclosed_fence_start(text: str) -> Optional[int]:
    """Position of the opening fence left unterminated at the end of text"""
    positions = [m.start() for m in re.finditer(re.escape(FENCE), text)]
    if len(positions) % 2 == 1:
        return positions[-1]
    return None


def _fence_language(text: str, start: int) -> str:
    """Language tag of the fence at start, or '' when the header isn't a short tag"""
    line_end = text.find("\n", start)
    if line_end == -1:
        line_end = len(text)
    header = text[start + len(FENCE):line_end].strip()
    return header if LANGUAGE_TAG.fullmatch(header) else ""


def split_message(content: str, limit: int = MAX_CONTENT_LENGTH) -> List[str]:
    """Split content into pieces of at most limit characters"""
    if not content or not content.strip():
        return []

    if len(content) <= limit:
        return [content]

    chunks = []
    remaining = content

    while len(remaining) > limit:
        previous = remaining
        cut = _find_break(remaining, limit)
        fence = _unclosed_fence_start(remaining[:cut])

        if fence is None:
            chunk = remaining[:cut].rstrip()
            remaining = remaining[cut:].lstrip()

        elif remaining[:fence].strip():
            # Keep the code block whole by ending this chunk right before it
            chunk = remaining[:fence].rstrip()
            remaining = remaining[fence:]

        else:
            close_at = remaining.find(FENCE, fence + len(FENCE))
            if close_at != -1 and close_at + len(FENCE) <= limit:
                cut = close_at + len(FENCE)
                chunk = remaining[:cut]
                remaining = remaining[cut:].lstrip()
            else:
                # Block is longer than one message: close it here and reopen it in the next chunk
                closing = f"\n{FENCE}"
                room = limit - len(closing)
                header_end = remaining.find("\n", fence) + 1
                if 0 < header_end <= room:
                    language = _fence_language(remaining, fence)
                    minimum = header_end
                else:
                    # No header line fits, reopen with a bare fence
                    language = ""
                    minimum = fence + len(FENCE)
                cut = _find_break(remaining, room, separators=("\n",), minimum=minimum)
                chunk = remaining[:cut].rstrip("\n") + closing
                remaining = f"{FENCE}{language}\n" + remaining[cut:].lstrip("\n")

        if len(remaining) >= len(previous):
            # Limit too small to close and reopen the block; plain cut instead
            chunk = previous[:limit]
            remaining = previous[limit:]

        if chunk:
            chunks.append(chunk)

    if remaining.strip():
        chunks.append(remaining)

    return chunks


def build_chunks(content: str,
                 files: Optional[List[Any]] = None,
                 embeds: Optional[List[Any]] = None,
                 limit: int = MAX_CONTENT_LENGTH) -> List[MessageChunk]:
    """Split content and attach files and embeds to the last chunk only"""
    pieces = split_message(content, limit)

    # Attachments with no text still need a message to ride on
    if not pieces and (files or embeds):
        pieces = [""]

    chunks = []
    total = len(pieces)
    for index, text in enumerate(pieces):
        is_last = index == total - 1
        chunks.append(MessageChunk(
            index=index,
            is_first=index == 0,
            is_last=is_last,
            text=text,
            files=list(files or []) if is_last else [],
            embeds=list(embeds or []) if is_last else [],
        ))
    return chunks
