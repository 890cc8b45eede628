"""
Process configuration, read from the environment (and an optional .env file).
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_RULES_FILE = "rules.json"
DEFAULT_WEB_ADDR = "0.0.0.0:8000"


@dataclass
class BotConfig:
    """Settings shared by the bot and the web app."""
    slack_bot_token: str = ""
    slack_app_token: str = ""
    slack_signing_secret: str = ""
    redis_addr: str = ""
    redis_password: str = ""
    redis_db: int = 0
    rules_file: str = DEFAULT_RULES_FILE
    web_addr: str = DEFAULT_WEB_ADDR
    session_backend: str = "redis"
    modules_dir: Optional[str] = None
    enabled_modules: Optional[list[str]] = None

    # Maps environment variable names to attributes, for require()
    ENV_FIELDS = {
        "SLACK_BOT_TOKEN": "slack_bot_token",
        "SLACK_APP_TOKEN": "slack_app_token",
        "SLACK_SIGNING_SECRET": "slack_signing_secret",
        "REDIS_ADDR": "redis_addr",
    }

    def require(self, *names: str) -> None:
        """
        Check that the named environment variables were provided.

        Raises:
            ConfigError: Listing every missing variable
        """
        missing = [name for name in names if not getattr(self, self.ENV_FIELDS[name])]
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

    @property
    def web_host(self) -> str:
        host, _, _ = self.web_addr.rpartition(":")
        return host or "0.0.0.0"

    @property
    def web_port(self) -> int:
        _, _, port = self.web_addr.rpartition(":")
        try:
            return int(port)
        except ValueError:
            raise ConfigError(f"Invalid WEB_ADDR: {self.web_addr}")


def _redis_db() -> int:
    value = os.getenv("REDIS_DB", "")
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid REDIS_DB value '{value}', using 0")
        return 0


def load_config(env_file: str | Path | None = None) -> BotConfig:
    """Load .env (if present) and build a BotConfig from the environment."""
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    enabled = os.getenv("ENABLED_MODULES", "")

    return BotConfig(
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN", ""),
        slack_app_token=os.getenv("SLACK_APP_TOKEN", ""),
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET", ""),
        redis_addr=os.getenv("REDIS_ADDR", ""),
        redis_password=os.getenv("REDIS_PWD", ""),
        redis_db=_redis_db(),
        rules_file=os.getenv("JSON_RULES") or DEFAULT_RULES_FILE,
        web_addr=os.getenv("WEB_ADDR") or DEFAULT_WEB_ADDR,
        session_backend=os.getenv("SESSION_BACKEND") or "redis",
        modules_dir=os.getenv("MODULES_DIR") or None,
        enabled_modules=[m for m in enabled.split(":") if m] or None,
    )
