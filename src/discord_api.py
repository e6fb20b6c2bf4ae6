"""
Discord REST API client.

Wraps the handful of v10 endpoints the commands need. Calls go through a
requests.Session with a per-request timeout, run in a worker thread so the
event loop keeps serving other interactions while Discord answers.

Every call is a single attempt: a non-2xx answer raises DownstreamApiError
with Discord's status and message, and nothing is retried here.
"""

import asyncio
import logging
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

API_BASE = "https://discord.com/api/v10"
USER_AGENT = "DiscordBot (https://github.com/utility-bot, 1.0)"


class DownstreamApiError(Exception):
    """Discord answered with a non-success status (or could not be reached)."""

    def __init__(self, status, message, method=None, route=None):
        self.status = status
        self.message = message
        self.method = method
        self.route = route
        super().__init__(f"Discord API {status if status is not None else 'request'} failed: {message}")

    def user_message(self):
        if self.status is None:
            return f"Discord API request failed: {self.message}"
        return f"Discord API error {self.status}: {self.message}"


class DiscordApiClient:
    def __init__(self, bot_token="", application_id="", base_url=API_BASE, timeout=10.0, session=None):
        self.bot_token = bot_token
        self.application_id = application_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self):
        return bool(self.bot_token)

    def _headers(self, reason=None):
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.bot_token:
            headers["Authorization"] = f"Bot {self.bot_token}"
        if reason:
            headers["X-Audit-Log-Reason"] = quote(reason[:512])
        return headers

    def _send(self, method, route, json_body=None, params=None, reason=None):
        url = f"{self.base_url}{route}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(reason),
                json=json_body,
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Discord API {method} {route} failed: {e}")
            raise DownstreamApiError(None, type(e).__name__, method, route) from e

        if not response.ok:
            try:
                body = response.json()
            except ValueError:
                body = None
            error_message = body.get("message") if isinstance(body, dict) else None
            error_message = error_message or response.text or f"HTTP {response.status_code}"
            logger.error(f"Discord API {method} {route} returned {response.status_code}: {response.text}")
            raise DownstreamApiError(response.status_code, error_message, method, route)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def request(self, method, route, json_body=None, params=None, reason=None):
        return await asyncio.to_thread(self._send, method, route, json_body, params, reason)

    # Guilds, members and users

    async def get_guild(self, guild_id, with_counts=True):
        params = {"with_counts": "true"} if with_counts else None
        return await self.request("GET", f"/guilds/{guild_id}", params=params)

    async def get_member(self, guild_id, user_id):
        return await self.request("GET", f"/guilds/{guild_id}/members/{user_id}")

    async def get_user(self, user_id):
        return await self.request("GET", f"/users/{user_id}")

    async def kick_member(self, guild_id, user_id, reason=None):
        return await self.request("DELETE", f"/guilds/{guild_id}/members/{user_id}", reason=reason)

    async def ban_member(self, guild_id, user_id, delete_message_seconds=0, reason=None):
        return await self.request(
            "PUT",
            f"/guilds/{guild_id}/bans/{user_id}",
            json_body={"delete_message_seconds": delete_message_seconds},
            reason=reason,
        )

    async def unban_user(self, guild_id, user_id, reason=None):
        return await self.request("DELETE", f"/guilds/{guild_id}/bans/{user_id}", reason=reason)

    async def modify_member(self, guild_id, user_id, changes, reason=None):
        return await self.request("PATCH", f"/guilds/{guild_id}/members/{user_id}", json_body=changes, reason=reason)

    async def timeout_member(self, guild_id, user_id, until_iso, reason=None):
        return await self.modify_member(guild_id, user_id, {"communication_disabled_until": until_iso}, reason=reason)

    # Messages

    async def list_messages(self, channel_id, limit=50):
        return await self.request("GET", f"/channels/{channel_id}/messages", params={"limit": limit})

    async def delete_message(self, channel_id, message_id, reason=None):
        return await self.request("DELETE", f"/channels/{channel_id}/messages/{message_id}", reason=reason)

    async def bulk_delete_messages(self, channel_id, message_ids, reason=None):
        return await self.request(
            "POST",
            f"/channels/{channel_id}/messages/bulk-delete",
            json_body={"messages": list(message_ids)},
            reason=reason,
        )

    async def create_message(self, channel_id, content):
        return await self.request(
            "POST",
            f"/channels/{channel_id}/messages",
            json_body={"content": content, "allowed_mentions": {"parse": []}},
        )

    # AutoMod

    async def list_auto_moderation_rules(self, guild_id):
        return await self.request("GET", f"/guilds/{guild_id}/auto-moderation/rules")

    async def create_auto_moderation_rule(self, guild_id, rule, reason=None):
        return await self.request("POST", f"/guilds/{guild_id}/auto-moderation/rules", json_body=rule, reason=reason)

    async def delete_auto_moderation_rule(self, guild_id, rule_id, reason=None):
        return await self.request("DELETE", f"/guilds/{guild_id}/auto-moderation/rules/{rule_id}", reason=reason)

    # Interactions and commands

    async def edit_original_response(self, interaction_token, content, application_id=None):
        application_id = application_id or self.application_id
        return await self.request(
            "PATCH",
            f"/webhooks/{application_id}/{interaction_token}/messages/@original",
            json_body={"content": content},
        )

    async def bulk_overwrite_commands(self, commands, guild_id=None):
        """Replace the full command list (PUT), globally or for one guild."""
        if guild_id:
            route = f"/applications/{self.application_id}/guilds/{guild_id}/commands"
        else:
            route = f"/applications/{self.application_id}/commands"
        return await self.request("PUT", route, json_body=commands)
