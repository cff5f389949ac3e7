from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List


class Settings(BaseSettings):
    telegram_bot_token: str = ""
    env: str = "development"  # "development" | "production"
    debug: bool = False

    # Gemini text models, keyed by the lobby's AI quality tier
    gemini_models: Dict[str, str] = {
        "economy": "gemini-2.0-flash",
        "balanced": "gemini-2.5-flash",
        "premium": "gemini-2.5-pro",
    }
    # Key validation, cheat check and secret generation always use the fast model
    gemini_fast_model: str = "gemini-2.0-flash"

    # api.navy: OpenAI-compatible image/voice provider (secondary key pool)
    navy_base_url: str = "https://api.navy/v1"
    navy_usage_url: str = "https://api.navy/v1/usage"
    navy_image_model: str = "flux.2-dev"
    navy_voice_model: str = "eleven_v3"
    navy_voice_id: str = "TUQNWEvVPBLzMBSVDPUA"
    navy_voice_cost: int = 55000
    navy_image_cost: int = 7500
    navy_usage_timeout: float = 5.0

    # Key pool retry policy
    key_retry_attempts: int = 4
    rate_limit_delay: float = 0.5

    # Key collection windows (seconds)
    key_collection_timeout: float = 5.0
    usage_collection_timeout: float = 3.0

    twist_probability: float = 0.2
    cheat_detection_enabled: bool = False  # disabled by policy

    # Generated media (served under /generated, reaped by age)
    generated_dir: str = "public/generated"
    generated_max_age_seconds: int = 2 * 60 * 60
    generated_cleanup_interval: int = 600

    auth_max_age_seconds: int = 86400

    # CORS origins. Set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin (e.g. the Mini App host); appended to allowed_origins
    extra_origin: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    def model_for_level(self, level: str) -> str:
        return self.gemini_models.get(level, self.gemini_models["balanced"])


settings = Settings()
