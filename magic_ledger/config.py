import json
import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Magic Ledger API"
    environment: str = "local"
    backend_cors_origins_raw: str = ""  # Comma-separated or JSON array

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    @property
    def backend_cors_origins(self) -> list[str]:
        """Parse CORS origins from raw string."""
        raw = os.getenv("BACKEND_CORS_ORIGINS", self.backend_cors_origins_raw).strip()
        if not raw:
            return ["*"]
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in raw.split(",") if item.strip()]

    # "memory" for local/dev and tests, "mongo" for a real deployment
    storage_backend: str = "memory"
    mongo_uri: str = "mongodb://localhost:27017/"
    mongo_db: str = "christmas_magic"

    # Votes are dated in this zone, "YYYY-MM-DD"
    timezone: str = "America/New_York"

    point_cost_cents: int = 100
    max_score: int = 365
    max_points_per_vote: int = 100
    vote_max_retries: int = 3

    min_wallet_top_up_cents: int = 500
    max_wallet_top_up_cents: int = 50000
    min_donation_cents: int = 100
    max_donation_cents: int = 10000

    log_level: str = "INFO"
    log_file: str = ""


settings = Settings()
