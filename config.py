import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

WORKERS_AI = "workers-ai"
GEMINI = "gemini"
PROVIDERS = (WORKERS_AI, GEMINI)

OCR_MODEL = "@cf/meta/llama-3.2-11b-vision-instruct"
SOLVER_MODEL = "@cf/meta/llama-3.1-70b-instruct"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class Settings:
    provider: str = WORKERS_AI

    # Cloudflare Workers AI
    cloudflare_account_id: Optional[str] = None
    cloudflare_api_token: Optional[str] = None
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"

    # Google Gemini
    google_api_key: Optional[str] = None
    gemini_ocr_model: str = "gemini-2.0-flash"
    gemini_solver_model: str = "gemini-2.5-pro"

    inference_timeout: float = 120.0
    log_level: str = "INFO"
    port: int = 8080

    def validate(self) -> "Settings":
        """
        Check that the selected provider has the credentials it needs.
        Raises:
            ValueError: on an unknown provider or a missing credential
        """
        if self.provider not in PROVIDERS:
            raise ValueError(
                f"Unknown INFERENCE_PROVIDER {self.provider!r}, expected one of {', '.join(PROVIDERS)}"
            )
        if self.provider == WORKERS_AI:
            if not self.cloudflare_account_id:
                raise ValueError("CLOUDFLARE_ACCOUNT_ID not found in environment variables")
            if not self.cloudflare_api_token:
                raise ValueError("CLOUDFLARE_API_TOKEN not found in environment variables")
        if self.provider == GEMINI and not self.google_api_key:
            raise ValueError("GOOGLE_API_KEY not found in environment variables")
        return self


def load_settings() -> Settings:
    """Read settings from the environment, after loading a .env file if present."""
    load_dotenv()
    defaults = Settings()
    return Settings(
        provider=os.getenv('INFERENCE_PROVIDER', defaults.provider).strip().lower(),
        cloudflare_account_id=os.getenv('CLOUDFLARE_ACCOUNT_ID'),
        cloudflare_api_token=os.getenv('CLOUDFLARE_API_TOKEN'),
        cloudflare_api_base=os.getenv('CLOUDFLARE_API_BASE', defaults.cloudflare_api_base).rstrip('/'),
        google_api_key=os.getenv('GOOGLE_API_KEY'),
        gemini_ocr_model=os.getenv('GEMINI_OCR_MODEL', defaults.gemini_ocr_model),
        gemini_solver_model=os.getenv('GEMINI_SOLVER_MODEL', defaults.gemini_solver_model),
        inference_timeout=float(os.getenv('INFERENCE_TIMEOUT', defaults.inference_timeout)),
        log_level=os.getenv('LOG_LEVEL', defaults.log_level).upper(),
        port=int(os.getenv('PORT', defaults.port)),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
