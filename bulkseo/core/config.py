import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Collaborators (generation model, storefront persistence, billing reads)
    GENERATION_API_URL: Optional[str] = None
    PERSISTENCE_API_URL: Optional[str] = None
    ENTITLEMENT_API_URL: Optional[str] = None
    TOKEN_BALANCE_API_URL: Optional[str] = None
    COLLABORATOR_API_KEY: Optional[str] = None
    COLLABORATOR_TIMEOUT_SECONDS: float = 60.0

    # Batch execution
    BATCH_WINDOW_SIZE: int = 5
    APPLY_SETTLE_DELAY_SECONDS: float = 1.0  # storefront cache invalidation lag
    DEFAULT_MODEL: str = "anthropic/claude-3.5-sonnet"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("bulkseo")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "GENERATION_API_URL",
        "PERSISTENCE_API_URL",
        "COLLABORATOR_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BATCH_WINDOW_SIZE < 1:
        message = f"BATCH_WINDOW_SIZE must be >= 1 (got {cfg.BATCH_WINDOW_SIZE})"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
