"""
Settings for the Utility Bot.

Values come from environment variables. When DISCORD_SECRET_ID is set the
named AWS Secrets Manager secret is read once and fills in anything the
environment leaves empty, using the same keys the Lambda deployment stores:

    {"DISCORD_PUBLIC_KEY": "...", "BOT_TOKEN": "...", "APPLICATION_ID": "..."}
"""

import json
import logging
import os
from dataclasses import dataclass

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://discord.com/api/v10"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    public_key_hex: str = ""
    bot_token: str = ""
    application_id: str = ""
    port: int = 3000
    api_base_url: str = DEFAULT_API_BASE
    api_timeout: float = 10.0
    guild_config_path: str | None = None
    command_handler_function: str | None = None
    register_guild_id: str | None = None
    log_level: str = "INFO"


def _first(environ, *names):
    for name in names:
        value = environ.get(name)
        if value:
            return value.strip()
    return ""


def fetch_secret(secret_id, region_name=None):
    """Read a JSON secret from AWS Secrets Manager. Returns {} on failure."""
    try:
        secrets_client = boto3.client("secretsmanager", region_name=region_name)
        secrets = secrets_client.get_secret_value(SecretId=secret_id)
        return json.loads(secrets["SecretString"])
    except ClientError as e:
        logger.error(f"Could not read secret {secret_id}: {e}")
    except (KeyError, ValueError) as e:
        logger.error(f"Secret {secret_id} is not a JSON string: {e}")
    return {}


def load_settings(environ=None):
    """Build Settings from the environment and the optional secret."""
    if environ is None:
        environ = os.environ

    public_key = _first(environ, "PUBLIC_KEY", "DISCORD_PUBLIC_KEY")
    bot_token = _first(environ, "DISCORD_TOKEN", "BOT_TOKEN")
    application_id = _first(environ, "CLIENT_ID", "APPLICATION_ID")

    secret_id = environ.get("DISCORD_SECRET_ID")
    if secret_id:
        secrets_dict = fetch_secret(secret_id, region_name=environ.get("AWS_REGION") or None)
        public_key = public_key or str(secrets_dict.get("DISCORD_PUBLIC_KEY", "")).strip()
        bot_token = bot_token or str(secrets_dict.get("BOT_TOKEN", "")).strip()
        application_id = application_id or str(secrets_dict.get("APPLICATION_ID", "")).strip()

    try:
        port = int(environ.get("PORT") or 3000)
    except ValueError:
        logger.warning(f"Ignoring invalid PORT value {environ.get('PORT')!r}")
        port = 3000

    try:
        api_timeout = float(environ.get("DISCORD_API_TIMEOUT") or 10.0)
    except ValueError:
        logger.warning(f"Ignoring invalid DISCORD_API_TIMEOUT value {environ.get('DISCORD_API_TIMEOUT')!r}")
        api_timeout = 10.0

    return Settings(
        public_key_hex=public_key,
        bot_token=bot_token,
        application_id=application_id,
        port=port,
        api_base_url=(environ.get("DISCORD_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
        api_timeout=api_timeout,
        guild_config_path=environ.get("GUILD_CONFIG_PATH") or None,
        command_handler_function=environ.get("COMMAND_HANDLER_FUNCTION") or None,
        register_guild_id=environ.get("REGISTER_GUILD_ID") or None,
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level="INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
