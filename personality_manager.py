"""
Personality Manager - Registry of personalities the relay can speak as
Stored in a JSON file keyed by lower-cased full name
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 32
DEFAULT_USERNAME = "Bot"


@dataclass
class Personality:
    """A persona that responses are generated and displayed as"""
    full_name: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    system_prompt: str = ""
    aliases: List[str] = field(default_factory=list)

    def standardized_name(self, bot_suffix: Optional[str] = None) -> str:
        return get_standardized_username(self, bot_suffix)


def get_standardized_username(personality: Optional[Personality], bot_suffix: Optional[str] = None) -> str:
    """
    Name shown on proxied messages.
    Display name first, then the capitalized first part of the full name, then "Bot".
    An optional bot suffix is appended as " | Suffix" and the result is kept within 32 characters.
    """
    name = ""
    if personality is not None:
        if personality.display_name and personality.display_name.strip():
            name = personality.display_name.strip()
        elif personality.full_name and personality.full_name.strip():
            first_part = personality.full_name.strip().split('-')[0]
            name = first_part[:1].upper() + first_part[1:]
    if not name:
        name = DEFAULT_USERNAME

    suffix = f" | {bot_suffix.strip()}" if bot_suffix and bot_suffix.strip() else ""

    if len(name) + len(suffix) <= MAX_USERNAME_LENGTH:
        return name + suffix

    room = MAX_USERNAME_LENGTH - len(suffix) - 3
    if room >= 1:
        return name[:room] + "..." + suffix

    # Suffix alone is too long to keep intact
    return (name + suffix)[:MAX_USERNAME_LENGTH - 3] + "..."


class PersonalityManager:
    """Loads, stores and looks up personalities"""

    PERSONALITIES_FILE = Path("personalities.json")

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else self.PERSONALITIES_FILE
        self.personalities: Dict[str, Personality] = {}
        self._load_personalities()

    def _load_personalities(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            self.personalities = {
                key: Personality(**entry) for key, entry in data.items()
            }
            logger.info(f"Loaded {len(self.personalities)} personalities from {self.path}")
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Couldn't load personalities from {self.path}: {e}")
            self.personalities = {}

    def _save_personalities(self) -> bool:
        try:
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump({key: asdict(p) for key, p in self.personalities.items()}, f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Couldn't save personalities to {self.path}: {e}")
            return False

    def add_personality(self, personality: Personality) -> tuple[bool, str]:
        """Returns (success, message)"""
        key = personality.full_name.strip().lower()
        if not key:
            return False, "❌ Personality name cannot be empty"

        if key in self.personalities:
            return False, f"❌ Personality `{personality.full_name}` already exists"

        for alias in personality.aliases:
            existing = self.get_personality(alias)
            if existing is not None:
                return False, f"❌ Alias `{alias}` is already used by `{existing.full_name}`"

        personality.full_name = personality.full_name.strip()
        self.personalities[key] = personality

        if self._save_personalities():
            return True, f"✅ Added personality `{personality.full_name}`"
        return False, "❌ Failed to save personality"

    def remove_personality(self, name: str) -> tuple[bool, str]:
        personality = self.get_personality(name)
        if personality is None:
            return False, f"❌ No personality named `{name}`"

        del self.personalities[personality.full_name.lower()]

        if self._save_personalities():
            return True, f"✅ Removed personality `{personality.full_name}`"
        return False, "❌ Failed to save personalities"

    def get_personality(self, name: str) -> Optional[Personality]:
        """Look up by full name or alias, case-insensitive"""
        key = (name or "").strip().lower()
        if not key:
            return None

        if key in self.personalities:
            return self.personalities[key]

        for personality in self.personalities.values():
            if key in (alias.lower() for alias in personality.aliases):
                return personality
        return None

    def find_by_display_name(self, username: str) -> Optional[Personality]:
        """Match a proxied message author back to its personality"""
        for personality in self.personalities.values():
            if get_standardized_username(personality) == username:
                return personality
            if username.startswith(get_standardized_username(personality) + " | "):
                return personality
        return None

    def list_personalities(self) -> str:
        if not self.personalities:
            return "No personalities registered"

        lines = []
        for personality in sorted(self.personalities.values(), key=lambda p: p.full_name.lower()):
            aliases = f" (aliases: {', '.join(personality.aliases)})" if personality.aliases else ""
            lines.append(f"• **{get_standardized_username(personality)}** `{personality.full_name}`{aliases}")
        return "\n".join(lines)
