"""Shared fixtures: signing keys, interaction payloads and a fake Discord API."""

import asyncio
import json
import time

import pytest
from nacl.signing import SigningKey

from guild_config import MemoryGuildConfigStore
from handle_command import build_registry
from interaction_codec import decode_interaction
from interaction_router import InteractionRouter

GUILD_ID = "81384788765712384"
CHANNEL_ID = "81384788765712390"
USER_ID = "80351110224678912"
TARGET_ID = "53908232506183680"
APPLICATION_ID = "1123581321345589144"
DISCORD_EPOCH_MS = 1420070400000

STRING = 3
INTEGER = 4
USER = 6
CHANNEL = 7


class FakeDiscordApi:
    """Records every call; responses and errors are configured per method name."""

    def __init__(self, configured=True, delay=0):
        self.configured = configured
        self.delay = delay
        self.calls = []
        self.responses = {}
        self.errors = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        async def call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if self.delay:
                await asyncio.sleep(self.delay)
            if name in self.errors:
                raise self.errors[name]
            response = self.responses.get(name)
            if callable(response):
                return response(*args, **kwargs)
            return response

        return call

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


def option(name, value, option_type=STRING):
    return {"name": name, "type": option_type, "value": value}


def command_payload(name, options=None, subcommand=None, guild_id=GUILD_ID, user_id=USER_ID, resolved=None):
    raw_options = list(options or [])
    if subcommand:
        raw_options = [{"name": subcommand, "type": 1, "options": raw_options}]

    data = {"id": "999", "name": name, "type": 1, "options": raw_options}
    if resolved:
        data["resolved"] = resolved

    payload = {
        "id": "1000000000000000001",
        "application_id": APPLICATION_ID,
        "type": 2,
        "token": "interaction-token",
        "channel_id": CHANNEL_ID,
        "data": data,
    }
    if guild_id:
        payload["guild_id"] = guild_id
        payload["member"] = {"user": {"id": user_id, "username": "mod"}, "roles": []}
    else:
        payload["user"] = {"id": user_id, "username": "mod"}
    return payload


def message_id(days_ago=0, sequence=0):
    """A message snowflake created days_ago days before now."""
    created_ms = int(time.time() * 1000) - days_ago * 86400 * 1000
    return str(((created_ms - DISCORD_EPOCH_MS) << 22) + sequence)


def make_interaction(name, **kwargs):
    return decode_interaction(json.dumps(command_payload(name, **kwargs)))


@pytest.fixture
def api():
    return FakeDiscordApi()


@pytest.fixture
def store():
    return MemoryGuildConfigStore()


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def router(registry, api, store):
    return InteractionRouter(registry, api, store)


@pytest.fixture
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def public_key_hex(signing_key):
    return signing_key.verify_key.encode().hex()


def sign(signing_key, timestamp, body):
    return signing_key.sign(timestamp.encode() + body).signature.hex()
