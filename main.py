"""
Personality Relay - Local LLM personalities in Discord
"""
import asyncio
import sys

import discord

from bot import PersonalityRelayBot
from config_manager import ConfigManager
from utils import Colors, clear_screen, print_banner, validate_environment

MENU = """What would you like to do?

  [1] Start with a saved configuration
  [2] Create a configuration
  [3] Delete a configuration
  [4] Quit
"""


async def run_bot(config):
    """Run until the bot stops or the task is cancelled, then shut it down"""
    relay = PersonalityRelayBot(config)

    try:
        await relay.start()
    except discord.LoginFailure:
        path = f"configs/{config.get('_config_name', 'unknown')}_config.json"
        print(Colors.red(f"\n❌ Discord rejected the bot token in {path}"))
    except asyncio.CancelledError:
        print(Colors.yellow("\nStopping..."))
    except Exception as e:
        print(Colors.red(f"\n❌ Bot stopped with an error: {e}"))
    finally:
        await relay.shutdown()


def _fresh_wizard(config_manager: ConfigManager):
    clear_screen()
    print_banner()
    return config_manager.setup_wizard()


def choose_or_create_config(config_manager: ConfigManager):
    """Menu loop; returns a loaded config or None to exit"""
    if not config_manager.config_exists():
        print(Colors.yellow("No saved configurations yet\n"))
        input("Press Enter to run setup...")
        return _fresh_wizard(config_manager)

    while True:
        print(Colors.green(f"✅ {len(config_manager.list_configs())} saved configuration(s)\n"))
        print(MENU)
        choice = input("Choice: ").strip()

        if choice == "1":
            name = config_manager.choose_config()
            config = config_manager.load_config(name) if name else None
            if config:
                return config
            print(Colors.red("❌ That configuration couldn't be loaded.\n"))
        elif choice == "2":
            return _fresh_wizard(config_manager)
        elif choice == "3":
            name = config_manager.choose_config()
            confirmed = name and input(f"\nReally delete '{name}'? (y/n): ").strip().lower() == 'y'
            if confirmed and config_manager.delete_config(name):
                print(Colors.green(f"🗑️  Deleted '{name}'\n"))
            if not config_manager.config_exists():
                print(Colors.yellow("\nNothing left, starting setup.\n"))
                return config_manager.setup_wizard()
        elif choice == "4":
            return None
        else:
            print(Colors.yellow("Pick 1 to 4"))


def main():
    """Main entry point"""
    clear_screen()
    print_banner()

    if not validate_environment():
        sys.exit(1)

    config = choose_or_create_config(ConfigManager())
    if not config:
        print("\nBye!")
        sys.exit(0)

    print(Colors.blue("\n━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━"))
    print(Colors.green(f"    🎭 Relaying with '{config.get('_config_name', 'unknown')}'"))
    print(Colors.blue("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━\n"))

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    bot_task = loop.create_task(run_bot(config))

    try:
        loop.run_until_complete(bot_task)
    except KeyboardInterrupt:
        print(Colors.yellow("\nCtrl+C received"))
        bot_task.cancel()
        try:
            loop.run_until_complete(bot_task)
        except asyncio.CancelledError:
            pass
    finally:
        leftovers = asyncio.all_tasks(loop)
        for task in leftovers:
            task.cancel()
        loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
        loop.close()

    print(Colors.green("\n✅ Personality Relay stopped"))


if __name__ == "__main__":
    main()
