"""
Command Handlers for the Utility Bot

Every slash command is an async function:

    handler(interaction, ctx) -> ResponseEnvelope

where ctx gives access to the Discord REST client (ctx.api), the per-guild
configuration store (ctx.config) and the fire-and-forget audit log
(ctx.audit). Handlers do not catch Discord API errors; the router turns them
into an ephemeral error message for the user.

Architecture Flow:
---------------
1. verify_request.py checks the signature and decodes the interaction
2. interaction_router.py looks the command up in the registry built here
3. Option checks (validators below) run before any Discord API call
4. The handler runs, inline or deferred ("bot is thinking...")

Deferred Commands:
---------------
Discord requires an answer within 3 seconds. Commands that may take longer
(purge) are deferred: the endpoint answers immediately and the handler's
result later replaces the "thinking..." message. When running on AWS Lambda
the deferred work is handed to a second function, whose entry point is
lambda_handler at the bottom of this module.

Available Commands:
----------------
/ping /help /serverinfo /userinfo /avatar
/kick /ban /unban /timeout /purge
/setlogchannel /automod block-words|list|delete
"""

import asyncio
import json
import logging
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from bot_settings import load_settings
from command_registry import (
    BAN_MEMBERS,
    CHANNEL,
    INTEGER,
    KICK_MEMBERS,
    MANAGE_GUILD,
    MANAGE_MESSAGES,
    MODERATE_MEMBERS,
    STRING,
    USER,
    Command,
    CommandRegistry,
    CommandSpec,
    OptionSpec,
)
from discord_api import DiscordApiClient, DownstreamApiError
from guild_config import create_store
from interaction_router import InteractionRouter
from interaction_codec import DecodeError, decode_interaction, message

# Set up logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

DISCORD_EPOCH_MS = 1420070400000
CDN_BASE = "https://cdn.discordapp.com"

UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}
DURATION_TOKEN = re.compile(r"(\d+)\s*([dhms])", re.IGNORECASE)
DURATION_FULL = re.compile(r"^\s*(?:\d+\s*[dhms]\s*)+$", re.IGNORECASE)
MAX_TIMEOUT_SECONDS = 28 * 86400

PURGE_MIN = 1
PURGE_MAX = 100
# Discord refuses to bulk-delete messages older than two weeks
BULK_DELETE_MAX_AGE = timedelta(days=14)

MAX_BAN_DELETE_DAYS = 7
MAX_KEYWORDS = 1000
MAX_KEYWORD_LENGTH = 60

# AutoMod rule constants
AUTOMOD_EVENT_MESSAGE_SEND = 1
AUTOMOD_TRIGGER_KEYWORD = 1
AUTOMOD_ACTION_BLOCK_MESSAGE = 1


# Parsing helpers

def parse_duration(text):
    """
    Parse a compact duration like "10m", "2h30m" or "1d 2h" into seconds.

    Units: d (days), h (hours), m (minutes), s (seconds). Tokens are summed.
    Returns None if the text is not made only of such tokens or adds up to 0.
    """
    if not isinstance(text, str) or not DURATION_FULL.match(text):
        return None
    total = sum(int(amount) * UNIT_SECONDS[unit.lower()] for amount, unit in DURATION_TOKEN.findall(text))
    if total <= 0:
        return None
    return total


def format_duration(seconds):
    parts = []
    for unit, size in UNIT_SECONDS.items():
        amount, seconds = divmod(seconds, size)
        if amount:
            parts.append(f"{amount}{unit}")
    return "".join(parts) or "0s"


def snowflake_time(snowflake):
    """Creation time embedded in a Discord id."""
    return datetime.fromtimestamp(((int(snowflake) >> 22) + DISCORD_EPOCH_MS) / 1000, tz=timezone.utc)


def is_snowflake(value):
    return isinstance(value, str) and value.isdigit() and len(value) <= 20


def discord_timestamp(moment, style="F"):
    return f"<t:{int(moment.timestamp())}:{style}>"


def as_int(value):
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def split_keywords(text):
    if not isinstance(text, str):
        return []
    keywords = []
    for word in text.split(","):
        word = word.strip()
        if word and word not in keywords:
            keywords.append(word)
    return keywords


def avatar_url(user):
    user_id = str(user.get("id"))
    avatar_hash = user.get("avatar")
    if avatar_hash:
        extension = "gif" if avatar_hash.startswith("a_") else "png"
        return f"{CDN_BASE}/avatars/{user_id}/{avatar_hash}.{extension}?size=1024"
    index = (int(user_id) >> 22) % 6 if user_id.isdigit() else 0
    return f"{CDN_BASE}/embed/avatars/{index}.png"


def _reason(interaction):
    return interaction.options.get("reason") or "No reason given"


def _audit_reason(interaction):
    return f"{_reason(interaction)} (by {interaction.invoking_user_id})"


async def _lookup_user(interaction, ctx, user_id):
    user = interaction.resolved_user(user_id)
    if user:
        return user
    if ctx.api.configured:
        return await ctx.api.get_user(user_id)
    return {"id": user_id}


# Validators: return an error message, or None when the options are fine

def _validate_target(interaction, verb):
    target = interaction.options.get("user")
    if not target:
        return "Please choose a member."
    if target == interaction.invoking_user_id:
        return f"You can't {verb} yourself."
    return None


def validate_kick(interaction):
    return _validate_target(interaction, "kick")


def validate_ban(interaction):
    problem = _validate_target(interaction, "ban")
    if problem:
        return problem
    delete_days = interaction.options.get("delete_days")
    if delete_days is None:
        return None
    delete_days = as_int(delete_days)
    if delete_days is None or not 0 <= delete_days <= MAX_BAN_DELETE_DAYS:
        return f"`delete_days` must be a whole number between 0 and {MAX_BAN_DELETE_DAYS}."
    return None


def validate_unban(interaction):
    if not is_snowflake(interaction.options.get("user_id")):
        return "Please give a valid user ID (digits only)."
    return None


def validate_timeout(interaction):
    problem = _validate_target(interaction, "time out")
    if problem:
        return problem
    seconds = parse_duration(interaction.options.get("duration"))
    if seconds is None:
        return "Invalid duration. Use formats like `10m`, `2h`, `1d2h30m`."
    if seconds > MAX_TIMEOUT_SECONDS:
        return "Timeouts can be at most 28 days."
    return None


def validate_purge(interaction):
    count = as_int(interaction.options.get("count"))
    if count is None or not PURGE_MIN <= count <= PURGE_MAX:
        return f"Please choose a number of messages between {PURGE_MIN} and {PURGE_MAX}."
    if not interaction.channel_id:
        return "I can't tell which channel to clean up."
    return None


def validate_block_words(interaction):
    keywords = split_keywords(interaction.options.get("words"))
    if not keywords:
        return "Please give at least one word (comma-separated)."
    if len(keywords) > MAX_KEYWORDS:
        return f"AutoMod rules can hold at most {MAX_KEYWORDS} words."
    too_long = [word for word in keywords if len(word) > MAX_KEYWORD_LENGTH]
    if too_long:
        return f"Words can be at most {MAX_KEYWORD_LENGTH} characters: `{too_long[0][:MAX_KEYWORD_LENGTH]}…`"
    return None


def validate_rule_id(interaction):
    if not is_snowflake(interaction.options.get("rule_id")):
        return "Please give a valid rule ID (digits only)."
    return None


# Handlers

async def unknown_command(interaction, ctx):
    return message("Unknown command. Try `/help`.", ephemeral=True)


async def ping(interaction, ctx):
    return message("🏓 Pong! (bot endpoint is working)")


async def help_command(interaction, ctx):
    lines = ["**Utility Bot is online ✅**", "", "**Commands:**"]
    for spec in ctx.registry.specs():
        if spec.subcommands:
            for sub in spec.subcommands:
                lines.append(f"- `/{spec.name} {sub.name}` - {sub.description}")
        else:
            lines.append(f"- `/{spec.name}` - {spec.description}")
    lines += ["", "**If commands don't appear:**", "Commands must be registered once via `register_commands.py`."]
    return message("\n".join(lines), ephemeral=True)


async def serverinfo(interaction, ctx):
    guild_id = interaction.guild_id

    if not ctx.api.configured:
        return message(
            "\n".join([
                "**🏰 Server Info**",
                f"Guild ID: `{guild_id}`",
                "",
                "Tip: Set `DISCORD_TOKEN` to enable full server details.",
            ]),
            ephemeral=True,
        )

    guild = await ctx.api.get_guild(guild_id, with_counts=True)
    owner_id = guild.get("owner_id")
    members = guild.get("approximate_member_count") or "Unknown"
    boosts = guild.get("premium_subscription_count") or 0
    tier = guild.get("premium_tier") or 0
    return message("\n".join([
        f"**🏰 Server Info - {guild.get('name')}**",
        f"Owner: <@{owner_id}> (`{owner_id}`)",
        f"Members: **{members}**",
        f"Boosts: **{boosts}** (Tier {tier})",
        f"Created: {discord_timestamp(snowflake_time(guild.get('id', guild_id)))}",
        f"Guild ID: `{guild.get('id', guild_id)}`",
    ]))


async def userinfo(interaction, ctx):
    user_id = interaction.options.get("user") or interaction.invoking_user_id
    user = await _lookup_user(interaction, ctx, user_id)
    username = user.get("username") or "unknown"
    display = user.get("global_name") or username

    lines = [
        f"**👤 {display}**",
        f"Username: `{username}`",
        f"User ID: `{user_id}`",
        f"Account created: {discord_timestamp(snowflake_time(user_id))}",
    ]
    if user.get("bot"):
        lines.append("Bot account: yes")

    if interaction.guild_id and ctx.api.configured:
        try:
            member = await ctx.api.get_member(interaction.guild_id, user_id)
        except DownstreamApiError as e:
            if e.status != 404:
                raise
            member = None

        if member is None:
            lines.append("Not a member of this server.")
        else:
            if member.get("nick"):
                lines.append(f"Nickname: {member['nick']}")
            joined_at = member.get("joined_at")
            if joined_at:
                try:
                    lines.append(f"Joined: {discord_timestamp(datetime.fromisoformat(joined_at))}")
                except ValueError:
                    lines.append(f"Joined: {joined_at}")
            lines.append(f"Roles: {len(member.get('roles') or [])}")

    return message("\n".join(lines), ephemeral=True)


async def avatar(interaction, ctx):
    user_id = interaction.options.get("user") or interaction.invoking_user_id
    user = await _lookup_user(interaction, ctx, user_id)
    return message(f"🖼️ Avatar for <@{user_id}>:\n{avatar_url(user)}")


async def kick(interaction, ctx):
    user_id = interaction.options["user"]
    await ctx.api.kick_member(interaction.guild_id, user_id, reason=_audit_reason(interaction))
    ctx.audit(f"👢 <@{user_id}> was kicked by <@{interaction.invoking_user_id}>. Reason: {_reason(interaction)}")
    return message(f"👢 Kicked <@{user_id}>. Reason: {_reason(interaction)}")


async def ban(interaction, ctx):
    user_id = interaction.options["user"]
    delete_days = as_int(interaction.options.get("delete_days")) or 0
    await ctx.api.ban_member(
        interaction.guild_id,
        user_id,
        delete_message_seconds=delete_days * 86400,
        reason=_audit_reason(interaction),
    )
    ctx.audit(f"🔨 <@{user_id}> was banned by <@{interaction.invoking_user_id}>. Reason: {_reason(interaction)}")
    return message(f"🔨 Banned <@{user_id}>. Reason: {_reason(interaction)}")


async def unban(interaction, ctx):
    user_id = interaction.options["user_id"]
    await ctx.api.unban_user(interaction.guild_id, user_id, reason=_audit_reason(interaction))
    ctx.audit(f"♻️ <@{user_id}> was unbanned by <@{interaction.invoking_user_id}>.")
    return message(f"♻️ Unbanned <@{user_id}>.")


async def timeout(interaction, ctx):
    user_id = interaction.options["user"]
    seconds = parse_duration(interaction.options["duration"])
    until = datetime.now(timezone.utc) + timedelta(seconds=seconds)
    await ctx.api.timeout_member(interaction.guild_id, user_id, until.isoformat(), reason=_audit_reason(interaction))
    ctx.audit(
        f"⏳ <@{user_id}> was timed out for {format_duration(seconds)} by <@{interaction.invoking_user_id}>. "
        f"Reason: {_reason(interaction)}"
    )
    return message(f"⏳ Timed out <@{user_id}> until {discord_timestamp(until)}. Reason: {_reason(interaction)}")


async def purge(interaction, ctx):
    count = interaction.options["count"]
    channel_id = interaction.channel_id
    messages = await ctx.api.list_messages(channel_id, limit=count) or []

    cutoff = datetime.now(timezone.utc) - BULK_DELETE_MAX_AGE
    message_ids = [
        str(msg["id"])
        for msg in messages
        if isinstance(msg, dict) and msg.get("id") and not msg.get("pinned") and snowflake_time(msg["id"]) > cutoff
    ]
    if not message_ids:
        return message("No messages newer than 14 days to delete.", ephemeral=True)

    reason = f"Purge by {interaction.invoking_user_id}"
    if len(message_ids) == 1:
        await ctx.api.delete_message(channel_id, message_ids[0], reason=reason)
    else:
        await ctx.api.bulk_delete_messages(channel_id, message_ids, reason=reason)

    ctx.audit(f"🧹 <@{interaction.invoking_user_id}> purged {len(message_ids)} message(s) in <#{channel_id}>.")
    return message(f"🧹 Deleted {len(message_ids)} message(s).", ephemeral=True)


async def setlogchannel(interaction, ctx):
    channel_id = interaction.options.get("channel")
    await ctx.config.set(interaction.guild_id, log_channel_id=channel_id)
    if channel_id:
        return message(f"📝 Audit log channel set to <#{channel_id}>.", ephemeral=True)
    return message("📝 Audit log channel cleared.", ephemeral=True)


async def automod_block_words(interaction, ctx):
    guild_id = interaction.guild_id
    keywords = split_keywords(interaction.options.get("words"))
    name = interaction.options.get("name") or "Blocked words"
    rule = {
        "name": name,
        "event_type": AUTOMOD_EVENT_MESSAGE_SEND,
        "trigger_type": AUTOMOD_TRIGGER_KEYWORD,
        "trigger_metadata": {"keyword_filter": keywords},
        "actions": [{"type": AUTOMOD_ACTION_BLOCK_MESSAGE}],
        "enabled": True,
    }
    created = await ctx.api.create_auto_moderation_rule(
        guild_id, rule, reason=f"Requested by {interaction.invoking_user_id}"
    )
    rule_id = str(created["id"])
    await ctx.config.update(
        guild_id,
        lambda config: replace(config, automod_rule_ids=config.automod_rule_ids + (rule_id,)),
    )
    ctx.audit(f"🛡️ <@{interaction.invoking_user_id}> created AutoMod rule **{name}** (`{rule_id}`).")
    return message(
        f"🛡️ Created AutoMod rule **{name}** (`{rule_id}`) blocking {len(keywords)} word(s).",
        ephemeral=True,
    )


async def automod_list(interaction, ctx):
    rules = await ctx.api.list_auto_moderation_rules(interaction.guild_id) or []
    if not rules:
        return message("No AutoMod rules in this server.", ephemeral=True)

    ours = set((await ctx.config.get(interaction.guild_id)).automod_rule_ids)
    lines = ["**🛡️ AutoMod rules**"]
    for rule in rules:
        rule_id = str(rule.get("id"))
        state = "enabled" if rule.get("enabled") else "disabled"
        marker = " (created by this bot)" if rule_id in ours else ""
        lines.append(f"- **{rule.get('name')}** (`{rule_id}`) {state}{marker}")
    return message("\n".join(lines), ephemeral=True)


async def automod_delete(interaction, ctx):
    guild_id = interaction.guild_id
    rule_id = interaction.options["rule_id"]
    await ctx.api.delete_auto_moderation_rule(
        guild_id, rule_id, reason=f"Requested by {interaction.invoking_user_id}"
    )
    await ctx.config.update(
        guild_id,
        lambda config: replace(
            config,
            automod_rule_ids=tuple(existing for existing in config.automod_rule_ids if existing != rule_id),
        ),
    )
    ctx.audit(f"🛡️ <@{interaction.invoking_user_id}> deleted AutoMod rule `{rule_id}`.")
    return message(f"🛡️ Deleted AutoMod rule `{rule_id}`.", ephemeral=True)


# Command definitions

UNKNOWN_COMMAND = Command(CommandSpec("unknown", "Fallback for unknown commands."), unknown_command)

COMMANDS = [
    (CommandSpec("ping", "Check if the bot is online."), ping, None),
    (CommandSpec("help", "Show what the bot can do."), help_command, None),
    (CommandSpec("serverinfo", "Show information about this server.", guild_only=True), serverinfo, None),
    (
        CommandSpec(
            "userinfo",
            "Show information about a user.",
            options=(OptionSpec("user", "The user to look up (defaults to you).", USER),),
        ),
        userinfo,
        None,
    ),
    (
        CommandSpec(
            "avatar",
            "Show a user's avatar.",
            options=(OptionSpec("user", "Whose avatar (defaults to you).", USER),),
        ),
        avatar,
        None,
    ),
    (
        CommandSpec(
            "kick",
            "Kick a member from the server.",
            options=(
                OptionSpec("user", "The member to kick.", USER, required=True),
                OptionSpec("reason", "Why they are being kicked.", STRING, constraints={"max_length": 400}),
            ),
            default_permission=KICK_MEMBERS,
            guild_only=True,
        ),
        kick,
        validate_kick,
    ),
    (
        CommandSpec(
            "ban",
            "Ban a member from the server.",
            options=(
                OptionSpec("user", "The member to ban.", USER, required=True),
                OptionSpec("reason", "Why they are being banned.", STRING, constraints={"max_length": 400}),
                OptionSpec(
                    "delete_days",
                    "Delete their messages from the last N days (0-7).",
                    INTEGER,
                    constraints={"min_value": 0, "max_value": MAX_BAN_DELETE_DAYS},
                ),
            ),
            default_permission=BAN_MEMBERS,
            guild_only=True,
        ),
        ban,
        validate_ban,
    ),
    (
        CommandSpec(
            "unban",
            "Lift a ban.",
            options=(OptionSpec("user_id", "ID of the banned user.", STRING, required=True),),
            default_permission=BAN_MEMBERS,
            guild_only=True,
        ),
        unban,
        validate_unban,
    ),
    (
        CommandSpec(
            "timeout",
            "Time out a member (e.g. 10m, 2h, 1d2h).",
            options=(
                OptionSpec("user", "The member to time out.", USER, required=True),
                OptionSpec("duration", "How long, e.g. 10m, 2h30m, 1d (max 28d).", STRING, required=True),
                OptionSpec("reason", "Why they are being timed out.", STRING, constraints={"max_length": 400}),
            ),
            default_permission=MODERATE_MEMBERS,
            guild_only=True,
        ),
        timeout,
        validate_timeout,
    ),
    (
        CommandSpec(
            "purge",
            "Delete recent messages in this channel.",
            options=(
                OptionSpec(
                    "count",
                    "How many messages to delete (1-100).",
                    INTEGER,
                    required=True,
                    constraints={"min_value": PURGE_MIN, "max_value": PURGE_MAX},
                ),
            ),
            default_permission=MANAGE_MESSAGES,
            guild_only=True,
            deferred=True,
            ephemeral=True,
        ),
        purge,
        validate_purge,
    ),
    (
        CommandSpec(
            "setlogchannel",
            "Choose where moderation actions are logged (leave empty to stop).",
            options=(OptionSpec("channel", "Channel for the audit log.", CHANNEL, constraints={"channel_types": [0]}),),
            default_permission=MANAGE_GUILD,
            guild_only=True,
        ),
        setlogchannel,
        None,
    ),
    (
        CommandSpec(
            "automod",
            "Manage AutoMod rules.",
            default_permission=MANAGE_GUILD,
            guild_only=True,
            subcommands=(
                CommandSpec(
                    "block-words",
                    "Block messages containing any of these words.",
                    options=(
                        OptionSpec("words", "Comma-separated words to block.", STRING, required=True),
                        OptionSpec("name", "Rule name.", STRING, constraints={"max_length": 100}),
                    ),
                ),
                CommandSpec("list", "List this server's AutoMod rules."),
                CommandSpec(
                    "delete",
                    "Delete an AutoMod rule.",
                    options=(OptionSpec("rule_id", "ID of the rule to delete.", STRING, required=True),),
                ),
            ),
        ),
        None,
        None,
    ),
]

SUBCOMMANDS = [
    ("automod", "block-words", automod_block_words, validate_block_words),
    ("automod", "list", automod_list, None),
    ("automod", "delete", automod_delete, validate_rule_id),
]


def build_registry():
    registry = CommandRegistry(fallback=UNKNOWN_COMMAND)
    for spec, handler, validator in COMMANDS:
        registry.register(spec, handler, validator)
    for parent, name, handler, validator in SUBCOMMANDS:
        registry.subcommand(parent, name, handler, validator)
    missing = registry.unbound_subcommands()
    if missing:
        raise ValueError(f"Subcommands without handlers: {missing}")
    return registry


def create_router(settings, deferrer=None, tasks=None, api=None, store=None, inline_deferred=False):
    """Wire the registry, REST client and config store into a router."""
    if api is None:
        api = DiscordApiClient(
            bot_token=settings.bot_token,
            application_id=settings.application_id,
            base_url=settings.api_base_url,
            timeout=settings.api_timeout,
        )
    if store is None:
        store = create_store(settings.guild_config_path)
    return InteractionRouter(
        build_registry(), api, store, tasks=tasks, deferrer=deferrer, inline_deferred=inline_deferred
    )


# AWS Lambda worker for deferred commands

_router = None


def get_router():
    global _router
    if _router is None:
        _router = create_router(load_settings())
    return _router


async def _finish_deferred(router, interaction):
    await router.run_deferred(interaction)
    await router.tasks.drain()


def lambda_handler(event, _):
    """
    Finish a deferred command handed over by the entry point Lambda.

    The event is the original interaction payload. The result (or the error)
    replaces the "thinking..." message, so this function's own return value
    is only used for logs.
    """
    try:
        raw = event if isinstance(event, (str, bytes)) else json.dumps(event)
        interaction = decode_interaction(raw)
    except DecodeError as e:
        logger.error(f"Error decoding deferred interaction: {e}")
        return {
            "statusCode": 400,
            "body": json.dumps({"error": "Invalid interaction payload"})
        }

    logger.info(f"Processing deferred command: /{interaction.display_name}")
    asyncio.run(_finish_deferred(get_router(), interaction))
    logger.info("Command processed successfully")
    return {
        "statusCode": 200,
        "body": json.dumps({"message": "Command processed successfully"})
    }
