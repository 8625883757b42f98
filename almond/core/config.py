"""
Configuration module - centralized settings for the dialog service.
Uses pydantic-settings to load values from environment variables and .env file.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic-settings automatically:
    1. Reads from environment variables (highest priority)
    2. Falls back to .env file values
    3. Uses default values if neither exists

    To override in production, set environment variables:
        export SEMPRE_URL=https://sempre.example.com
        export SHOW_WELCOME=false
    """

    # ---------------------------------------------------------------------------
    # PYDANTIC SETTINGS CONFIGURATION
    # ---------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",        # Load from .env file in project root
        env_file_encoding="utf-8",  # File encoding
        extra="ignore",         # Ignore extra env vars not defined here
    )

    # ---------------------------------------------------------------------------
    # APPLICATION SETTINGS
    # ---------------------------------------------------------------------------
    # APP_NAME: Display name shown in API docs and logging
    APP_NAME: str = "Almond Dialog Core"

    # DEBUG: Enable debug mode (more verbose errors)
    DEBUG: bool = False

    # ---------------------------------------------------------------------------
    # ASSISTANT SETTINGS
    # ---------------------------------------------------------------------------
    # ASSISTANT_NAME: How the assistant introduces itself
    ASSISTANT_NAME: str = "Almond"

    # SHOW_WELCOME: Greet the user when a session starts
    SHOW_WELCOME: bool = True

    # LOCALE: Passed to the semantic parser with every utterance
    LOCALE: str = "en-US"

    # ---------------------------------------------------------------------------
    # SEMANTIC PARSER SETTINGS
    # ---------------------------------------------------------------------------
    # SEMPRE_URL: Base URL of the upstream semantic parser
    # - Empty string disables free-text parsing (parsed intents still work)
    SEMPRE_URL: str = ""

    # SEMPRE_TIMEOUT: Request timeout in seconds
    SEMPRE_TIMEOUT: float = 10.0

    # ---------------------------------------------------------------------------
    # PROGRAM SETTINGS
    # ---------------------------------------------------------------------------
    # FLOW_TOKEN_BYTES: Random bytes in each remote flow token (hex encoded)
    FLOW_TOKEN_BYTES: int = 16

    # DEVICE_SETUP_URL: Where users are sent to configure a missing device
    DEVICE_SETUP_URL: str = "/devices/create"


# ---------------------------------------------------------------------------
# GLOBAL SETTINGS INSTANCE
# ---------------------------------------------------------------------------
# Usage: from almond.core.config import settings
settings = Settings()
