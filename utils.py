"""
Utility functions for Personality Relay
"""

import sys
import os
import uuid

MIN_PYTHON = (3, 9)


def print_banner():
    """Print welcome banner"""
    print(Colors.cyan("""
    ═══════════════════════════════════════════════════════════════

                     🎭 Personality Relay 🤖

        Talk to local LLM personalities in Discord, each with
                     its own name and avatar.

    ═══════════════════════════════════════════════════════════════
    """))


def validate_environment() -> bool:
    """True when running on a supported Python"""
    if sys.version_info[:2] >= MIN_PYTHON:
        return True

    required = ".".join(str(part) for part in MIN_PYTHON)
    print(Colors.red(f"❌ Personality Relay needs Python {required} or newer"))
    print(f"   Found: Python {sys.version_info.major}.{sys.version_info.minor}")
    return False


def clear_screen():
    os.system('cls' if os.name == 'nt' else 'clear')


def sanitize_message(text: str, limit: int = 2000) -> str:
    """Strip null characters and clip to limit, marking the cut with '...'"""
    if not text:
        return ""

    text = text.replace('\x00', '')
    return text if len(text) <= limit else text[:limit - 3] + "..."


def create_request_id(prefix: str = "req") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class Colors:
    """ANSI colors for console status lines"""

    CODES = {
        'blue': '\033[94m',
        'cyan': '\033[96m',
        'green': '\033[92m',
        'yellow': '\033[93m',
        'red': '\033[91m',
    }
    RESET = '\033[0m'
    enabled = True

    @classmethod
    def _paint(cls, color: str, text: str) -> str:
        if not cls.enabled:
            return text
        return f"{cls.CODES[color]}{text}{cls.RESET}"

    @classmethod
    def green(cls, text: str) -> str:
        return cls._paint('green', text)

    @classmethod
    def red(cls, text: str) -> str:
        return cls._paint('red', text)

    @classmethod
    def yellow(cls, text: str) -> str:
        return cls._paint('yellow', text)

    @classmethod
    def blue(cls, text: str) -> str:
        return cls._paint('blue', text)

    @classmethod
    def cyan(cls, text: str) -> str:
        return cls._paint('cyan', text)

    @classmethod
    def disable(cls):
        cls.enabled = False


# Windows consoles only honour ANSI codes after this
if sys.platform == "win32":
    os.system('')

# No colors when piped to a file
if not sys.stdout.isatty():
    Colors.disable()
