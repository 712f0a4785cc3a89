"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.
Where it fits: every component receives a `Settings` instance at construction.

WHAT IS HAPPENING HERE:
All gateway protocol constants and timings are declared here: the protocol version,
the IDENTIFY rate limit, backoff caps, the INVALID_SESSION jitter window. The dev
gateway server reads its knobs from the same object so both sides stay in sync.
Values come from `GATEWAY_*` environment variables, a `.env` file, or the legacy
`config/config.json` file (`{"authTok": "..."}`).
"""
import json
from pathlib import Path

from loguru import logger
from pydantic_settings import BaseSettings

DEFAULT_CONFIG_FILE = Path("config/config.json")


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"

    # Credentials
    TOKEN: str = ""

    # Discovery / connection URI
    DISCOVERY_URL: str = "https://discord.com/api/gateway"
    ENDPOINT_URL: str | None = None
    PROTOCOL_VERSION: int = 6
    ENCODING: str = "json"
    USER_AGENT: str = "gateway-keeper (v0.1)"
    DISCOVERY_RETRIES: int = 3
    DISCOVERY_BASE_DELAY_S: float = 1.0

    # IDENTIFY
    CLIENT_NAME: str = "kiyo"
    COMPRESS: bool = True
    LARGE_THRESHOLD: int = 250
    IDENTIFY_MIN_INTERVAL_S: float = 5.432

    # Reconnect
    RECONNECT_MAX_DELAY_S: float = 300.0
    RESUME_ATTEMPT_LIMIT: int | None = None
    INVALID_SESSION_DELAY_MIN_S: float = 1.0
    INVALID_SESSION_DELAY_MAX_S: float = 5.0

    # Dev gateway server
    PORT: int = 8000
    DEV_HEARTBEAT_INTERVAL_MS: int = 41250
    DEV_EVENT_INTERVAL_S: float = 3.0
    DEV_ACK_DROP_RATE: float = 0.0
    DEV_CHAOS_RATE: float = 0.0

    class Config:
        env_prefix = "GATEWAY_"
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'


def load_settings(config_file: Path | None = None) -> Settings:
    """
    Builds Settings from the environment, overlaid with the legacy JSON config file
    when it exists. The file only ever carried the token (`authTok`); any other
    upper-case keys are passed through as-is.
    """
    path = config_file or DEFAULT_CONFIG_FILE
    overrides: dict = {}
    if path.is_file():
        with path.open(encoding="utf-8") as fh:
            raw = json.load(fh)
        if raw.get("authTok"):
            overrides["TOKEN"] = raw["authTok"]
        overrides.update({k: v for k, v in raw.items() if k.isupper()})
        logger.info(f"config_file={path} keys={sorted(overrides)}")
    elif config_file is not None:
        logger.warning(f"config_file={path} event=missing reason='falling back to environment'")
    return Settings(**overrides)


settings = Settings()
