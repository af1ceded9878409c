"""Bot token resolution for the feed relay bot."""

import json

import boto3
from botocore.exceptions import ClientError

from .config import Config
from .logging_config import create_execution_logger

TOKEN_KEYS = ("token", "bot_token", "telegram_token", "telegram_bot_token")


def resolve_bot_token(config: Config, execution_id: str | None = None) -> str:
    """Return the bot token from the environment or AWS Secrets Manager.

    Raises:
        ValueError: If no token is configured
    """
    if config.bot_token.strip():
        return config.bot_token.strip()
    if config.telegram_secret_name:
        return get_telegram_token(
            config.telegram_secret_name, config.aws_region, execution_id
        )
    raise ValueError("Set TELEGRAM_BOT_TOKEN or TELEGRAM_SECRET_NAME")


def get_telegram_token(
    secret_name: str, aws_region: str, execution_id: str | None = None
) -> str:
    """
    Retrieve the Telegram bot token from AWS Secrets Manager.

    Supports both plain string and JSON secret formats. The secret value is
    never logged.

    Args:
        secret_name: Name of the secret in Secrets Manager
        aws_region: AWS region for Secrets Manager client
        execution_id: Execution ID for logging context

    Returns:
        Telegram bot token

    Raises:
        RuntimeError: If the secret cannot be retrieved or has an invalid format
        ValueError: If secret name or region is empty
    """
    secrets_logger = create_execution_logger("secrets_manager", execution_id)

    if not secret_name or not secret_name.strip():
        raise ValueError("Secret name cannot be empty")

    if not aws_region or not aws_region.strip():
        raise ValueError("AWS region cannot be empty")

    try:
        secrets_logger.info(f"Retrieving bot token from Secrets Manager: {secret_name}")
        secrets_client = boto3.client("secretsmanager", region_name=aws_region)

        response = secrets_client.get_secret_value(SecretId=secret_name)

        if "SecretString" not in response:
            raise ValueError(f"Secret {secret_name} does not contain a string value")

        secret_value = response["SecretString"]

        if not secret_value or not secret_value.strip():
            raise ValueError(f"Secret {secret_name} contains empty value")

        try:
            secret_data = json.loads(secret_value)
        except json.JSONDecodeError:
            secrets_logger.info("Retrieved bot token from plain text secret")
            return secret_value.strip()

        if not isinstance(secret_data, dict):
            raise ValueError(f"JSON secret {secret_name} must be an object")

        for key in TOKEN_KEYS:
            value = secret_data.get(key)
            if isinstance(value, str) and value.strip():
                secrets_logger.info("Retrieved bot token from JSON secret")
                return value.strip()

        for value in secret_data.values():
            if isinstance(value, str) and value.strip():
                secrets_logger.info("Using first available value from JSON secret")
                return value.strip()

        raise ValueError(f"No valid token found in JSON secret {secret_name}")

    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        secrets_logger.error(
            f"AWS Secrets Manager error retrieving {secret_name}: {error_code}"
        )
        raise RuntimeError(f"Failed to retrieve secret {secret_name}") from e
    except ValueError as e:
        secrets_logger.error(f"Invalid secret format for {secret_name}: {e}")
        raise RuntimeError(f"Invalid secret format for {secret_name}") from e
