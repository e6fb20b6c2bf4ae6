"""
Interaction payload decoding and response encoding.

Incoming:  raw request bytes -> Interaction
Outgoing:  ResponseEnvelope -> raw response bytes

Discord Interaction Types Used:
-----------------------------
1 = PING                 (endpoint liveness check, answered with PONG)
2 = APPLICATION_COMMAND  (slash commands)

Discord Response Types Used:
-------------------------
1 = PONG
4 = CHANNEL_MESSAGE_WITH_SOURCE
5 = DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE ("bot is thinking...")
"""

import json
from dataclasses import dataclass, field

from discord_interactions import InteractionResponseFlags, InteractionResponseType, InteractionType

# Discord rejects message content longer than this
MESSAGE_LIMIT = 2000
# Error text is cut shorter to leave room for the prefix
ERROR_LIMIT = 1800

SUB_COMMAND = 1
SUB_COMMAND_GROUP = 2

PONG = "pong"
MESSAGE = "message"
DEFERRED = "deferred"


class DecodeError(Exception):
    """The request body is not a usable interaction payload."""


@dataclass(frozen=True)
class Interaction:
    type: int
    command_path: tuple = ()
    options: dict = field(default_factory=dict)
    invoking_user_id: str | None = None
    guild_id: str | None = None
    channel_id: str | None = None
    id: str | None = None
    application_id: str | None = None
    token: str | None = None
    resolved: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_ping(self):
        return self.type == InteractionType.PING

    @property
    def is_command(self):
        return self.type == InteractionType.APPLICATION_COMMAND

    @property
    def command_name(self):
        return self.command_path[0] if self.command_path else ""

    @property
    def display_name(self):
        return " ".join(self.command_path)

    def resolved_user(self, user_id):
        users = self.resolved.get("users")
        if isinstance(users, dict):
            return users.get(str(user_id))
        return None


@dataclass(frozen=True)
class ResponseEnvelope:
    kind: str
    content: str | None = None
    ephemeral: bool = False


def pong():
    return ResponseEnvelope(PONG)


def message(content, ephemeral=False):
    return ResponseEnvelope(MESSAGE, truncate(content), ephemeral)


def deferred(ephemeral=False):
    return ResponseEnvelope(DEFERRED, ephemeral=ephemeral)


def truncate(text, limit=MESSAGE_LIMIT):
    text = "" if text is None else str(text)
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _snowflake(value):
    if value is None or isinstance(value, bool):
        return None
    return str(value)


def _parse_options(raw_options):
    """
    Flatten the options array, pulling out a leading subcommand if present.

    A subcommand group nests one subcommand, so "/settings logging set"
    becomes the path ["logging", "set"] plus the subcommand's own options.
    """
    path = []
    entries = _named_entries(raw_options)
    if entries and entries[0].get("type") == SUB_COMMAND_GROUP:
        path.append(entries[0]["name"])
        entries = _named_entries(entries[0].get("options"))
        if not entries or entries[0].get("type") != SUB_COMMAND:
            return path, {}
    if entries and entries[0].get("type") == SUB_COMMAND:
        path.append(entries[0]["name"])
        entries = _named_entries(entries[0].get("options"))

    options = {opt["name"]: opt.get("value") for opt in entries}
    return path, options


def _named_entries(raw_options):
    if not isinstance(raw_options, list):
        return []
    return [opt for opt in raw_options if isinstance(opt, dict) and isinstance(opt.get("name"), str)]


def _invoking_user(payload):
    member = payload.get("member")
    if isinstance(member, dict) and isinstance(member.get("user"), dict):
        return _snowflake(member["user"].get("id"))
    user = payload.get("user")
    if isinstance(user, dict):
        return _snowflake(user.get("id"))
    return None


def decode_interaction(raw_body):
    """Parse the raw request body. Raises DecodeError rather than guessing."""
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"body is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise DecodeError("interaction payload must be a JSON object")

    interaction_type = payload.get("type")
    if not isinstance(interaction_type, int) or isinstance(interaction_type, bool):
        raise DecodeError("interaction payload has no integer 'type'")

    common = {
        "type": interaction_type,
        "id": _snowflake(payload.get("id")),
        "application_id": _snowflake(payload.get("application_id")),
        "token": payload.get("token") if isinstance(payload.get("token"), str) else None,
        "raw": payload,
    }
    if interaction_type == InteractionType.PING:
        return Interaction(**common)

    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}

    command_path = []
    options = {}
    if isinstance(data.get("name"), str) and data["name"]:
        command_path.append(data["name"])
        sub_path, options = _parse_options(data.get("options"))
        command_path.extend(sub_path)

    resolved = data.get("resolved") if isinstance(data.get("resolved"), dict) else {}

    return Interaction(
        command_path=tuple(command_path),
        options=options,
        invoking_user_id=_invoking_user(payload),
        guild_id=_snowflake(payload.get("guild_id")),
        channel_id=_snowflake(payload.get("channel_id")),
        resolved=resolved,
        **common,
    )


def response_body(envelope):
    """The JSON-ready dict Discord expects for an envelope."""
    flags = InteractionResponseFlags.EPHEMERAL if envelope.ephemeral else 0

    if envelope.kind == PONG:
        return {"type": InteractionResponseType.PONG}

    if envelope.kind == DEFERRED:
        body = {"type": InteractionResponseType.DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE}
        if flags:
            body["data"] = {"flags": flags}
        return body

    data = {"content": truncate(envelope.content or "")}
    if flags:
        data["flags"] = flags
    return {"type": InteractionResponseType.CHANNEL_MESSAGE_WITH_SOURCE, "data": data}


def encode_response(envelope):
    return json.dumps(response_body(envelope), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
