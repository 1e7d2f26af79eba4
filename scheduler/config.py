"""
Engine settings and logging setup.
"""

import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class EngineSettings(BaseSettings):
    # Matcher
    LOOKAHEAD_DAYS: int = 14
    DEFAULT_VISIT_MINUTES: int = 30
    MAX_PROPOSALS_PER_MED_TECH: int = 3

    # Validator
    MAX_PART_OF_DEPTH: int = 32
    REQUIRE_CONTACT_FIELDS: bool = False

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="HOMEVISIT_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the engine's log format to the root logger."""
    logging.basicConfig(
        level=(level or EngineSettings().LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
