from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Phase Gate Service"
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Database
    database_url: str = "sqlite+aiosqlite:///./phasegate.db"

    # Auth (RS256 bearer tokens verified against a JWKS endpoint)
    jwks_url: str = ""
    jwt_issuer: str = ""  # empty = issuer not checked
    jwt_audience: str = ""  # empty = audience not checked

    # Financial / document subsystem that supplies gate facts
    fact_service_url: str = "http://localhost:8100"
    fact_service_timeout: float = 5.0

    # Forced override policy
    override_confirmation_phrase: str = "DESBLOQUEAR"
    override_min_reason_length: int = 10
    override_roles: dict[str, list[str]] = {
        "financial": ["admin", "cost_controller"],
        "documentary": ["admin", "project_manager"],
        "contractual": ["admin"],
    }

    # Optional JSON policy file with per-project rule sets
    rules_file: str = ""

    audit_page_size: int = 100


@lru_cache
def get_settings() -> Settings:
    return Settings()
