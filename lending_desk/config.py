import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "3000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [
            o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()
        ]
    )

    # Google Cloud Vision (text extraction)
    google_cloud_api_key: Optional[str] = os.getenv("GOOGLE_CLOUD_API_KEY")
    vision_api_url: str = os.getenv("VISION_API_URL", "https://vision.googleapis.com/v1/images:annotate")

    # Airtable (record store)
    airtable_api_key: Optional[str] = os.getenv("AIRTABLE_API_KEY")
    airtable_base_id: Optional[str] = os.getenv("AIRTABLE_BASE_ID")
    airtable_base_url: str = os.getenv("AIRTABLE_BASE_URL", "https://api.airtable.com/v0")
    books_table: str = os.getenv("BOOKS_TABLE", "Books")
    students_table: str = os.getenv("STUDENTS_TABLE", "Students")
    loans_table: str = os.getenv("LOANS_TABLE", "Loans")

    # HTTP client
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))
    http_retries: int = int(os.getenv("HTTP_RETRIES", "3"))

    # Sessions
    session_cookie_name: str = os.getenv("SESSION_COOKIE_NAME", "lending_session")
    session_ttl_seconds: int = int(os.getenv("SESSION_TTL_SECONDS", "86400"))  # 24 hours
    session_max_entries: int = int(os.getenv("SESSION_MAX_ENTRIES", "1000"))

    # Uploads
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Lending Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_flag("DEBUG")

    def config_flags(self) -> dict:
        """Presence flags for the credentials the desk needs; values are never exposed."""
        return {
            "hasGoogleCloudKey": bool(self.google_cloud_api_key),
            "hasAirtableKey": bool(self.airtable_api_key),
            "hasAirtableBase": bool(self.airtable_base_id),
        }


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
