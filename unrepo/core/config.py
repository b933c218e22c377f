import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    AUTO_CREATE_TABLES: bool = True

    # Sessions (GitHub login JWTs)
    JWT_SECRET: Optional[str] = None
    JWT_EXPIRES_DAYS: int = 7

    # CORS
    FRONTEND_URL: Optional[str] = None
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000,https://app.unrepo.dev,https://dashboard.unrepo.dev,https://www.unrepo.dev"  # comma-separated

    # Language model providers
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o"
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-3-5-sonnet-20241022"
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com/v1/"

    # GitHub
    GITHUB_ACCESS_TOKEN: Optional[str] = None
    GITHUB_API_URL: str = "https://api.github.com"

    # Token-holder verification (Helius RPC)
    HELIUS_API_KEY: Optional[str] = None
    HELIUS_RPC_URL: str = "https://mainnet.helius-rpc.com/"
    UNREPO_TOKEN_MINT: str = "F5kKqk9PPfYPXWdaXjsoksnab4xTFQmiKnCk1FTXpump"
    UNREPO_TOKEN_DECIMALS: int = 6
    UNREPO_TOKEN_THRESHOLD: int = 1_000_000

    # Wallet registration: "strict" rejects bad signatures, "permissive" logs and registers
    SIGNATURE_MODE: str = "strict"

    # Quota policy
    FREE_KEY_LIFETIME_LIMIT: int = 5
    PREMIUM_RESEARCH_PER_HOUR: int = 100
    PREMIUM_CHAT_PER_HOUR: int = 200
    RATE_WINDOW_SECONDS: int = 3600
    WALLET_RESEARCH_LIMIT: int = 1
    WALLET_CHAT_LIMIT: int = 5

    # Key issuance without an email falls back to this account
    DEFAULT_KEY_EMAIL: str = "test@unrepo.dev"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def cors_origins(self) -> List[str]:
        origins = [o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]
        if self.FRONTEND_URL and self.FRONTEND_URL not in origins:
            origins.append(self.FRONTEND_URL)
        return origins


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("unrepo")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "GITHUB_ACCESS_TOKEN",
        "HELIUS_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not (getattr(cfg, "OPENAI_API_KEY", None) or getattr(cfg, "ANTHROPIC_API_KEY", None)):
        missing.append("OPENAI_API_KEY|ANTHROPIC_API_KEY")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
