"""
Command registry: command name (+ optional subcommand) -> handler.

Built once at startup from the declarative CommandSpec list. The same specs
produce the JSON that register_commands.py uploads to Discord, so what users
see in the command picker and what the router can dispatch never drift apart.
"""

from dataclasses import dataclass, field, replace

# Discord application command option types
STRING = 3
INTEGER = 4
BOOLEAN = 5
USER = 6
CHANNEL = 7

SUB_COMMAND = 1

# Permission bits used for default_member_permissions
KICK_MEMBERS = 1 << 1
BAN_MEMBERS = 1 << 2
MANAGE_GUILD = 1 << 5
MANAGE_MESSAGES = 1 << 13
MODERATE_MEMBERS = 1 << 40


@dataclass(frozen=True)
class OptionSpec:
    name: str
    description: str
    type: int = STRING
    required: bool = False
    constraints: dict = field(default_factory=dict)

    def to_payload(self):
        payload = {
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "required": self.required,
        }
        payload.update(self.constraints)
        return payload


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    options: tuple = ()
    default_permission: int | None = None
    guild_only: bool = False
    subcommands: tuple = ()
    deferred: bool = False
    ephemeral: bool = False

    def to_payload(self):
        payload = {
            "name": self.name,
            "description": self.description,
            "type": 1,
        }
        if self.subcommands:
            payload["options"] = [
                {
                    "name": sub.name,
                    "description": sub.description,
                    "type": SUB_COMMAND,
                    "options": [opt.to_payload() for opt in sub.options],
                }
                for sub in self.subcommands
            ]
        elif self.options:
            payload["options"] = [opt.to_payload() for opt in self.options]
        if self.default_permission is not None:
            payload["default_member_permissions"] = str(self.default_permission)
        if self.guild_only:
            payload["dm_permission"] = False
        return payload


@dataclass(frozen=True)
class Command:
    spec: CommandSpec
    handler: object
    validator: object = None

    @property
    def deferred(self):
        return self.spec.deferred

    @property
    def ephemeral(self):
        return self.spec.ephemeral


class CommandRegistry:
    def __init__(self, fallback):
        self._commands = {}
        self._subcommands = {}
        self.fallback = fallback

    def register(self, spec, handler=None, validator=None):
        if spec.name in self._commands:
            raise ValueError(f"Command {spec.name!r} is already registered")
        if handler is None and not spec.subcommands:
            raise ValueError(f"Command {spec.name!r} needs a handler or subcommands")
        self._commands[spec.name] = Command(spec, handler, validator)
        return self._commands[spec.name]

    def subcommand(self, parent, name, handler, validator=None):
        """Bind a handler to one of parent's declared subcommands."""
        command = self._commands.get(parent)
        if command is None:
            raise ValueError(f"Unknown parent command {parent!r}")
        declared = {sub.name: sub for sub in command.spec.subcommands}
        if name not in declared:
            raise ValueError(f"{parent!r} does not declare subcommand {name!r}")
        key = (parent, name)
        if key in self._subcommands:
            raise ValueError(f"Subcommand {parent} {name} is already registered")
        sub_spec = replace(declared[name], guild_only=command.spec.guild_only or declared[name].guild_only)
        self._subcommands[key] = Command(sub_spec, handler, validator)
        return self._subcommands[key]

    def unbound_subcommands(self):
        """Declared subcommands that have no handler yet."""
        return [
            (command.spec.name, sub.name)
            for command in self._commands.values()
            for sub in command.spec.subcommands
            if (command.spec.name, sub.name) not in self._subcommands
        ]

    def resolve(self, command_path):
        """Exact, case-sensitive lookup. Anything unknown gets the fallback command."""
        if not command_path:
            return self.fallback
        command = self._commands.get(command_path[0])
        if command is None:
            return self.fallback
        if command.spec.subcommands:
            if len(command_path) != 2:
                return self.fallback
            return self._subcommands.get(tuple(command_path), self.fallback)
        if len(command_path) != 1:
            return self.fallback
        return command

    def __contains__(self, name):
        return name in self._commands

    def __len__(self):
        return len(self._commands)

    def specs(self):
        return [command.spec for command in self._commands.values()]

    def payloads(self):
        return [spec.to_payload() for spec in self.specs()]
