"""
Per-guild configuration (audit log channel, AutoMod rules created by the bot).

Handlers get a GuildConfigStore and never touch storage directly. Writes for
one guild are serialized by an asyncio.Lock keyed by guild id, so two admins
reconfiguring the same server cannot lose each other's update. Different
guilds do not wait on each other.
"""

import asyncio
import json
import logging
import os
from collections import defaultdict
from dataclasses import asdict, dataclass, field, fields, replace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuildConfig:
    log_channel_id: str | None = None
    automod_rule_ids: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (data or {}).items() if k in known}
        if "automod_rule_ids" in values:
            values["automod_rule_ids"] = tuple(str(rule_id) for rule_id in values["automod_rule_ids"] or ())
        return cls(**values)

    def to_dict(self):
        data = asdict(self)
        data["automod_rule_ids"] = list(self.automod_rule_ids)
        return data


class GuildConfigStore:
    """Base store: in-memory cache plus per-guild write locks."""

    def __init__(self):
        self._configs = {}
        self._locks = defaultdict(asyncio.Lock)

    async def get(self, guild_id):
        return self._configs.get(str(guild_id), GuildConfig())

    async def update(self, guild_id, mutate):
        """Apply mutate(GuildConfig) -> GuildConfig under the guild's lock and persist it."""
        guild_id = str(guild_id)
        async with self._locks[guild_id]:
            current = self._configs.get(guild_id, GuildConfig())
            updated = mutate(current)
            await self._commit(guild_id, updated)
        logger.info(f"Updated config for guild {guild_id}")
        return updated

    async def set(self, guild_id, **changes):
        return await self.update(guild_id, lambda config: replace(config, **changes))

    async def _commit(self, guild_id, config):
        """Store config for guild_id. The cache only changes once storage succeeded."""
        self._configs[guild_id] = config


class MemoryGuildConfigStore(GuildConfigStore):
    """Process-local store; everything is lost on restart."""


class JsonFileGuildConfigStore(GuildConfigStore):
    """Keeps every guild's config in one JSON file, rewritten atomically."""

    def __init__(self, path):
        super().__init__()
        self.path = path
        self._file_lock = asyncio.Lock()
        self._configs = self._read()

    def _read(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read guild config file {self.path}: {e}", exc_info=True)
            return {}
        if not isinstance(data, dict):
            logger.error(f"Guild config file {self.path} does not hold a JSON object, ignoring it")
            return {}
        return {str(guild_id): GuildConfig.from_dict(config) for guild_id, config in data.items()}

    def _write(self, snapshot):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    async def _commit(self, guild_id, config):
        async with self._file_lock:
            snapshot = {existing: current.to_dict() for existing, current in self._configs.items()}
            snapshot[guild_id] = config.to_dict()
            await asyncio.to_thread(self._write, snapshot)
            self._configs[guild_id] = config


def create_store(path=None):
    if path:
        logger.info(f"Using guild config file {path}")
        return JsonFileGuildConfigStore(path)
    logger.info("No GUILD_CONFIG_PATH set, guild config is kept in memory")
    return MemoryGuildConfigStore()
