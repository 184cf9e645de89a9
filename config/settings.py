"""Session Router – Application Configuration.

Pydantic Settings, loaded from .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 5000

    # --- Database / Redis ---
    database_url: str = ""
    redis_url: str = "redis://127.0.0.1:6379/0"

    # --- Secrets ---
    # Derives the Fernet key used for auth state at rest
    auth_secret: str = "change-me-long-random-secret"

    # --- WhatsApp Bridge (Baileys sidecar) ---
    bridge_http_url: str = "http://localhost:3000"
    bridge_ws_url: str = "ws://localhost:3000"
    bridge_browser_name: str = "Session Router"
    bridge_timeout_seconds: float = 15.0

    # --- Connection supervision ---
    reconnect_backoff_seconds: float = 3.0
    terminal_disconnect_codes: str = "401,403"

    # --- Outbound routing ---
    force_priority_tag: str = "priority"
    echo_ttl_ms: int = 15000
    socket_ready_timeout_seconds: float = 4.0
    socket_ready_retry_delay_seconds: float = 1.0
    socket_ready_poll_seconds: float = 0.2
    default_channel_priority: int = 99

    # --- CRM (LeadConnector-style REST API) ---
    crm_base_url: str = "https://services.leadconnectorhq.com"
    crm_api_version: str = "2021-07-28"
    crm_client_id: str = ""
    crm_client_secret: str = ""
    crm_timeout_seconds: float = 15.0
    crm_placeholder_name: str = "WhatsApp User"
    crm_contact_source: str = "WhatsApp"

    # --- Inbound forwarding ---
    show_source_label: bool = True
    from_me_marker: str = "[Sent from another device]"
    media_dir: str = "./data/media"
    media_base_url: str = "http://localhost:5000/media"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def terminal_codes(self) -> frozenset[int]:
        codes = set()
        for raw in (self.terminal_disconnect_codes or "").split(","):
            raw = raw.strip()
            if raw.isdigit():
                codes.add(int(raw))
        return frozenset(codes)


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
