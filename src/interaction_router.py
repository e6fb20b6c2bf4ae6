"""
Interaction Router - the dispatch core.

Turns a verified, decoded Interaction into exactly one ResponseEnvelope.

Dispatch Flow:
------------
1. PING            -> PONG, no command lookup at all
2. Not a command   -> ephemeral "not supported" message
3. Resolve command -> registry lookup, unknown names get the fallback command
4. Pre-checks      -> server-only commands outside a server and local option
                      validation answer immediately, before any REST call
5. Run             -> normal commands run inline and return their envelope;
                      deferred commands are handed to the deferrer and
                      answered with "bot is thinking...", then finished by
                      editing the original response. With inline_deferred
                      they run like normal commands instead

Discord gives us 3 seconds to answer. Every failure (handler exception,
Discord API error) is caught here and turned into an ephemeral message, so
the platform always receives a valid response.
"""

import asyncio
import contextlib
import json
import logging

import boto3

from discord_api import DownstreamApiError
from interaction_codec import ERROR_LIMIT, deferred, message, pong, truncate

logger = logging.getLogger(__name__)

GUILD_ONLY_MESSAGE = "This command only works in a server."
UNSUPPORTED_MESSAGE = "This interaction type is not supported."


def error_text(interaction, error):
    """User-facing text for a failed command. Internals stay in the logs."""
    if isinstance(error, DownstreamApiError):
        return truncate(f"❌ {error.user_message()}", ERROR_LIMIT)
    return truncate(f"❌ Something went wrong while running `/{interaction.display_name}`.", ERROR_LIMIT)


class BackgroundTasks:
    """Tracks fire-and-forget asyncio tasks so shutdown can wait for them."""

    def __init__(self, limit=100):
        self._semaphore = asyncio.Semaphore(limit)
        self._active = set()

    def __len__(self):
        return len(self._active)

    def schedule(self, coroutine, name=None):
        task = asyncio.create_task(self._run_with_limit(coroutine), name=name)
        self._active.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _run_with_limit(self, coroutine):
        async with self._semaphore:
            await coroutine

    def _on_done(self, task):
        self._active.discard(task)
        with contextlib.suppress(asyncio.CancelledError):
            exc = task.exception()
            if exc is not None:
                logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    async def drain(self, timeout_seconds=30.0):
        """Wait for pending tasks; cancel whatever is still running after the timeout."""
        if not self._active:
            return
        pending_now = list(self._active)
        logger.info(f"Waiting for {len(pending_now)} background task(s)")
        _, pending = await asyncio.wait(pending_now, timeout=timeout_seconds)
        if not pending:
            return
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning(f"Cancelled {len(pending)} background task(s) at shutdown")


class CommandContext:
    """What a handler can reach besides the interaction itself."""

    def __init__(self, interaction, api, config, registry, tasks):
        self.interaction = interaction
        self.api = api
        self.config = config
        self.registry = registry
        self._tasks = tasks

    def audit(self, text):
        """Post text to the guild's audit channel without waiting for it."""
        guild_id = self.interaction.guild_id
        if not guild_id:
            return None
        return self._tasks.schedule(self._send_audit(guild_id, text), name=f"audit-{guild_id}")

    async def _send_audit(self, guild_id, text):
        try:
            config = await self.config.get(guild_id)
            if not config.log_channel_id:
                return
            await self.api.create_message(config.log_channel_id, truncate(text))
        except Exception as e:
            logger.warning(f"Audit notification for guild {guild_id} failed: {e}")


class LambdaDeferrer:
    """Hands deferred interactions to a second Lambda function (async invoke)."""

    def __init__(self, function_name, lambda_client=None):
        self.function_name = function_name
        self._lambda_client = lambda_client

    @property
    def lambda_client(self):
        if self._lambda_client is None:
            self._lambda_client = boto3.client("lambda")
        return self._lambda_client

    async def __call__(self, interaction):
        logger.info(f"Invoking function: {self.function_name}")
        response = await asyncio.to_thread(
            self.lambda_client.invoke,
            FunctionName=self.function_name,
            InvocationType="Event",
            Payload=json.dumps(interaction.raw),
        )
        logger.info(f"Lambda invoke response status code: {response['ResponseMetadata']['HTTPStatusCode']}")


class InteractionRouter:
    def __init__(self, registry, api, config, tasks=None, deferrer=None, inline_deferred=False):
        self.registry = registry
        self.api = api
        self.config = config
        self.tasks = tasks or BackgroundTasks()
        self.deferrer = deferrer or self._defer_in_process
        self.inline_deferred = inline_deferred

    def context_for(self, interaction):
        return CommandContext(interaction, self.api, self.config, self.registry, self.tasks)

    async def dispatch(self, interaction):
        """Produce the single envelope for this interaction. Never raises."""
        if interaction.is_ping:
            return pong()

        if not interaction.is_command:
            logger.warning(f"Unsupported interaction type: {interaction.type}")
            return message(UNSUPPORTED_MESSAGE, ephemeral=True)

        command = self.registry.resolve(interaction.command_path)
        logger.info(f"Handling command: /{interaction.display_name}")

        try:
            rejection = self._precheck(command, interaction)
            if rejection:
                logger.info(f"Rejected /{interaction.display_name}: {rejection}")
                return message(rejection, ephemeral=True)

            if command.deferred and not self.inline_deferred:
                await self.deferrer(interaction)
                logger.info(f"Deferred /{interaction.display_name}")
                return deferred(command.ephemeral)

            return await self._invoke(command, interaction)
        except Exception as e:
            logger.error(f"Error handling /{interaction.display_name}: {e}", exc_info=True)
            return message(error_text(interaction, e), ephemeral=True)

    async def run_deferred(self, interaction):
        """Run a deferred command and edit the "thinking..." message with the outcome."""
        command = self.registry.resolve(interaction.command_path)
        try:
            envelope = await self._invoke(command, interaction)
            content = envelope.content or "Done."
        except Exception as e:
            logger.error(f"Error processing deferred /{interaction.display_name}: {e}", exc_info=True)
            content = error_text(interaction, e)

        try:
            await self.api.edit_original_response(
                interaction.token,
                truncate(content),
                application_id=interaction.application_id,
            )
        except Exception as e:
            logger.error(f"Failed to edit response for /{interaction.display_name}: {e}", exc_info=True)

    def _precheck(self, command, interaction):
        if command.spec.guild_only and not interaction.guild_id:
            return GUILD_ONLY_MESSAGE
        if command.validator is not None:
            return command.validator(interaction)
        return None

    async def _invoke(self, command, interaction):
        envelope = await command.handler(interaction, self.context_for(interaction))
        if envelope is None:
            raise TypeError(f"Handler for /{interaction.display_name} returned no response")
        return envelope

    async def _defer_in_process(self, interaction):
        self.tasks.schedule(self.run_deferred(interaction), name=f"deferred-{interaction.id}")
