"""
Configuration management for the DevPulse dashboard application.
"""

from typing import Dict, List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # DevPulse backend configuration
    devpulse_api_url: str = Field("http://localhost:8080/api", description="Base URL of the DevPulse REST API")
    devpulse_api_token: Optional[str] = None
    devpulse_session_cookie: Optional[str] = None
    api_timeout: float = 30.0

    # Analysis watch configuration
    analysis_max_wait: float = Field(120.0, gt=0, description="Seconds before a watch gives up")
    analysis_poll_interval: float = Field(5.0, gt=0, description="Seconds between fallback polls")
    job_history_limit: int = Field(100, ge=1)

    # Application configuration
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_debug: bool = False

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"

    # Dashboard configuration
    dashboard_title: str = "DevPulse"
    cors_origins: str = "http://localhost:3000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def allowed_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def devpulse_headers(self) -> Dict[str, str]:
        """Get headers for DevPulse API requests."""
        headers = {"Content-Type": "application/json"}
        if self.devpulse_api_token:
            headers["Authorization"] = f"Bearer {self.devpulse_api_token}"
        return headers

    @property
    def devpulse_cookies(self) -> Dict[str, str]:
        """The backend authenticates browser sessions with a cookie."""
        if not self.devpulse_session_cookie:
            return {}
        return {"session": self.devpulse_session_cookie}


# Global settings instance
settings = Settings()
