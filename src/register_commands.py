"""
Discord Command Registration Script

Uploads the slash command list to Discord. It must be run:
1. After initial bot deployment
2. Any time you add/modify/remove commands

The command list is built from the same registry the bot dispatches with,
and uploaded with PUT, which replaces every command at once. Running it
twice is harmless, and commands removed from the code disappear from Discord.

By default commands are registered globally. Pass --guild (or set
REGISTER_GUILD_ID) to register them on a single server instead, which
updates instantly and is handy while testing. Don't do both for the same
application, or users will see every command twice.
"""

import argparse
import asyncio
import json
import sys

from bot_settings import load_settings
from discord_api import DiscordApiClient, DownstreamApiError
from handle_command import build_registry


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Register the bot's slash commands with Discord.")
    parser.add_argument("--guild", help="Register to this guild only instead of globally.")
    parser.add_argument("--dry-run", action="store_true", help="Print the command JSON and exit.")
    return parser.parse_args(argv)


async def register(client, commands, guild_id=None):
    return await client.bulk_overwrite_commands(commands, guild_id=guild_id)


def main(argv=None):
    args = parse_args(argv)
    commands = build_registry().payloads()

    if args.dry_run:
        print(json.dumps(commands, indent=2))
        return 0

    settings = load_settings()
    if not settings.bot_token or not settings.application_id:
        print("DISCORD_TOKEN and CLIENT_ID (or the Secrets Manager secret) are required.")
        return 1

    client = DiscordApiClient(
        bot_token=settings.bot_token,
        application_id=settings.application_id,
        base_url=settings.api_base_url,
        timeout=settings.api_timeout,
    )
    guild_id = args.guild or settings.register_guild_id

    try:
        registered = asyncio.run(register(client, commands, guild_id=guild_id))
    except DownstreamApiError as e:
        print(f"Error registering commands: {e}")
        return 1

    scope = f"guild {guild_id}" if guild_id else "globally"
    print(f"Successfully registered all commands {scope}!")
    for cmd in registered or []:
        print(f"- {cmd['name']}: {cmd['id']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
