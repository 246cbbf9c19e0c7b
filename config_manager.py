"""
Configuration Manager - Setup wizard and pipeline settings
"""

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Optional, Any, List
import getpass
from llm_providers import create_provider
from utils import Colors

logger = logging.getLogger(__name__)


@dataclass
class PipelineSettings:
    """Delivery pipeline tunables, all times in milliseconds"""
    request_ttl_ms: int = 30000
    error_blackout_ms: int = 60000
    cleanup_interval_ms: int = 60000
    max_error_wait_ms: int = 60000
    min_message_delay_ms: int = 3000
    chunk_delay_ms: int = 750
    media_delay_ms: int = 750
    duplicate_window_ms: int = 5000
    max_content_length: int = 2000
    webhook_name: str = "Personality Relay"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        """Read settings from a config dict, falling back to defaults for missing or bad values"""
        settings = cls()
        for f in fields(cls):
            if f.name not in config:
                continue
            value = config[f.name]
            default = getattr(settings, f.name)

            if isinstance(default, str):
                if isinstance(value, str) and value.strip():
                    setattr(settings, f.name, value.strip())
                else:
                    logger.warning(f"Invalid value for {f.name}: {value!r}, using {default!r}")
                continue

            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                logger.warning(f"Invalid value for {f.name}: {value!r}, using {default}")
                continue
            setattr(settings, f.name, int(value))

        if settings.max_content_length < 100:
            logger.warning(f"max_content_length {settings.max_content_length} is too small, using 2000")
            settings.max_content_length = 2000

        return settings


class ConfigManager:
    """Configuration wizard - handles all setup options"""

    CONFIG_DIR = Path("configs")
    CONFIG_SUFFIX = "_config.json"
    DEFAULT_OLLAMA_URL = "http://localhost:11434"
    DEFAULT_LMSTUDIO_URL = "http://localhost:1234"

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else self.CONFIG_DIR
        self.config_dir.mkdir(exist_ok=True)

    def _config_path(self, name: str) -> Path:
        return self.config_dir / f"{name}{self.CONFIG_SUFFIX}"

    def list_configs(self) -> List[str]:
        """List all available config files"""
        return sorted(
            file.name[:-len(self.CONFIG_SUFFIX)]
            for file in self.config_dir.glob(f"*{self.CONFIG_SUFFIX}")
        )

    def config_exists(self, name: Optional[str] = None) -> bool:
        """Check if a specific config exists, or if any configs exist"""
        if name:
            return self._config_path(name).exists()
        return len(self.list_configs()) > 0

    def load_config(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            with open(self._config_path(name), 'r') as f:
                config = json.load(f)
        except (OSError, ValueError) as e:
            print(Colors.red(f"❌ Couldn't load config '{name}': {e}"))
            return None

        if not isinstance(config, dict):
            print(Colors.red(f"❌ Config '{name}' is not a JSON object"))
            return None

        config['_config_name'] = name
        return config

    def save_config(self, config: Dict[str, Any], name: str) -> bool:
        """Save settings with a specific name"""
        config_copy = config.copy()
        config_copy.pop('_config_name', None)
        try:
            with open(self._config_path(name), 'w') as f:
                json.dump(config_copy, f, indent=2)
            return True
        except OSError as e:
            print(Colors.red(f"❌ Couldn't save config '{name}': {e}"))
            return False

    def delete_config(self, name: str) -> bool:
        config_path = self._config_path(name)
        try:
            if config_path.exists():
                config_path.unlink()
                return True
            return False
        except OSError as e:
            print(Colors.red(f"❌ Couldn't delete config '{name}': {e}"))
            return False

    def _pick(self, options: List[str], prompt: str) -> str:
        """Numbered menu, returns the chosen option"""
        for number, option in enumerate(options, 1):
            print(f"  [{number}] {option}")
        print()

        while True:
            answer = input(f"{prompt} (1-{len(options)}): ").strip()
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            print(Colors.red(f"Enter a number from 1 to {len(options)}"))

    def choose_config(self) -> Optional[str]:
        """Pick one of the saved configs"""
        names = self.list_configs()
        if not names:
            return None

        print(Colors.yellow("Saved configurations:\n"))
        labels = []
        for name in names:
            saved = self.load_config(name) or {}
            provider = str(saved.get('llm_provider', '?')).replace('_', ' ')
            labels.append(f"{Colors.cyan(name)} ({provider}, {saved.get('model_name', 'no model')})")

        return names[labels.index(self._pick(labels, "Config"))]

    def get_config_name(self, suggested: Optional[str] = None) -> str:
        """Ask for a file-safe config name, confirming overwrites"""
        print(Colors.yellow("\nWhat should this configuration be called?\n"))

        while True:
            hint = f" [{suggested}]" if suggested else ""
            raw = input(f"Name{hint}: ").strip() or (suggested or "")
            name = "".join(c for c in raw if c.isalnum() or c in "-_")

            if not name:
                print(Colors.red("Use letters, numbers, '-' or '_'"))
                continue
            if name != raw:
                print(Colors.yellow(f"Using '{name}'"))

            if not self.config_exists(name):
                return name
            if input(f"'{name}' exists, replace it? (y/n): ").strip().lower() == 'y':
                return name

    def setup_wizard(self, config_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Ask for provider, model, token and name suffix, then save"""
        print(Colors.blue("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━"))
        print(Colors.green("      🎭 Relay Setup"))
        print(Colors.blue("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━\n"))

        config_name = config_name or self.get_config_name("my-relay")
        config: Dict[str, Any] = {}

        print(Colors.yellow("\n1) Model server\n"))
        servers = {"🦙 Ollama": ("ollama", self.DEFAULT_OLLAMA_URL),
                   "🖥️  LM Studio": ("lm_studio", self.DEFAULT_LMSTUDIO_URL)}
        config['llm_provider'], default_url = servers[self._pick(list(servers), "Server")]

        url = input(f"Server address [{default_url}]: ").strip()
        if url and not url.startswith('http'):
            url = f"http://{url}"
        config['llm_base_url'] = url or default_url

        provider = create_provider(config['llm_provider'], config['llm_base_url'])
        print(f"\n🔍 Checking {provider.name} at {config['llm_base_url']}...")
        if not provider.test_connection():
            print(Colors.red(f"❌ {provider.name} isn't answering. Start it and run setup again.\n"))
            return None

        models = provider.list_models()
        if not models:
            print(Colors.red("❌ The server has no models loaded.\n"))
            return None

        print(Colors.yellow("\n2) Model\n"))
        config['model_name'] = self._pick(models[:20], "Model")
        print(Colors.green(f"✅ Using {config['model_name']}\n"))

        print(Colors.yellow("3) Discord bot token\n"))
        print(Colors.cyan("Give the bot the Manage Webhooks permission so personalities can post."))
        token = ""
        while len(token) <= 50:
            token = getpass.getpass("Token (hidden): ").strip()
            if len(token) <= 50:
                print(Colors.red("That doesn't look like a bot token, try again.\n"))
        config['discord_token'] = token

        print(Colors.yellow("\n4) Name suffix (optional)\n"))
        print("Shown after every personality name, e.g. 'Albert | Dev'.")
        config['bot_suffix'] = input("Suffix: ").strip()

        config.update({f.name: f.default for f in fields(PipelineSettings)})

        if self.save_config(config, config_name):
            print(f"\n💾 Saved {Colors.cyan(str(self._config_path(config_name)))}")
            print(Colors.cyan("Edit the *_ms values there to tune pacing and retries."))
        else:
            print(Colors.yellow("\n⚠️  Settings weren't saved, running with them anyway"))

        config['_config_name'] = config_name
        return config
