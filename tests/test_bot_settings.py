"""Tests for settings loading from the environment and Secrets Manager."""

import json
from unittest.mock import Mock

from botocore.exceptions import ClientError

import bot_settings
from bot_settings import load_settings


def test_defaults():
    settings = load_settings({})
    assert settings.public_key_hex == ""
    assert settings.port == 3000
    assert settings.api_timeout == 10.0
    assert settings.guild_config_path is None
    assert settings.log_level == "INFO"


def test_environment_values():
    settings = load_settings({
        "PUBLIC_KEY": " abcd ",
        "BOT_TOKEN": "token",
        "APPLICATION_ID": "123",
        "PORT": "8080",
        "DISCORD_API_BASE": "http://localhost:9000/api/",
        "GUILD_CONFIG_PATH": "/tmp/guilds.json",
        "COMMAND_HANDLER_FUNCTION": "worker",
        "LOG_LEVEL": "debug",
    })
    assert settings.public_key_hex == "abcd"
    assert settings.bot_token == "token"
    assert settings.application_id == "123"
    assert settings.port == 8080
    assert settings.api_base_url == "http://localhost:9000/api"
    assert settings.guild_config_path == "/tmp/guilds.json"
    assert settings.command_handler_function == "worker"
    assert settings.log_level == "DEBUG"


def test_invalid_numbers_fall_back(caplog):
    settings = load_settings({"PORT": "eighty", "DISCORD_API_TIMEOUT": "soon"})
    assert settings.port == 3000
    assert settings.api_timeout == 10.0
    assert "Ignoring invalid PORT" in caplog.text


def test_secret_fills_missing_values(monkeypatch):
    secrets_client = Mock()
    secrets_client.get_secret_value.return_value = {
        "SecretString": json.dumps({"DISCORD_PUBLIC_KEY": "from-secret", "BOT_TOKEN": "secret-token", "APPLICATION_ID": "9"})
    }
    monkeypatch.setattr(bot_settings.boto3, "client", Mock(return_value=secrets_client))

    settings = load_settings({"DISCORD_SECRET_ID": "discord_keys", "DISCORD_TOKEN": "env-token"})

    assert settings.public_key_hex == "from-secret"
    assert settings.bot_token == "env-token"
    assert settings.application_id == "9"
    secrets_client.get_secret_value.assert_called_once_with(SecretId="discord_keys")


def test_secret_errors_fall_back_to_environment(monkeypatch):
    secrets_client = Mock()
    secrets_client.get_secret_value.side_effect = ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetSecretValue"
    )
    monkeypatch.setattr(bot_settings.boto3, "client", Mock(return_value=secrets_client))

    settings = load_settings({"DISCORD_SECRET_ID": "discord_keys", "PUBLIC_KEY": "env-key"})

    assert settings.public_key_hex == "env-key"
    assert settings.bot_token == ""
