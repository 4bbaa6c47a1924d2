from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Provider credentials
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    vertex_access_token: str = ""
    vertex_project_id: str = ""
    vertex_location: str = "us-central1"
    xai_api_key: str = ""
    xai_base_url: str = "https://api.x.ai/v1"
    azure_openai_api_key: str = ""
    azure_openai_endpoint: str = ""
    azure_openai_deployment: str = ""

    # Routing
    router_strategy: str = "cost-based"
    router_seed: int | None = None

    # Storage (empty path disables the persistent tier)
    cache_db_path: str = "data/cache.db"
    ledger_db_path: str = "data/ledger.db"
    cache_similarity_algorithm: str = "cosine"

    # Budgets (USD, empty = unlimited)
    budget_daily: float | None = None
    budget_monthly: float | None = None
    budget_alert_threshold: float = 0.8
    budget_mode: str = "soft-warn"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    configured = [
        settings.openai_api_key,
        settings.anthropic_api_key,
        settings.vertex_access_token,
        settings.xai_api_key,
        settings.azure_openai_api_key,
    ]
    if not any(configured):
        errors.append("At least one provider credential must be set (e.g. OPENAI_API_KEY)")

    if settings.vertex_access_token and not settings.vertex_project_id:
        errors.append("VERTEX_PROJECT_ID must be set when VERTEX_ACCESS_TOKEN is configured")

    if settings.azure_openai_api_key and not (settings.azure_openai_endpoint and settings.azure_openai_deployment):
        errors.append("AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_DEPLOYMENT must be set for Copilot")

    if settings.budget_mode not in ("soft-warn", "hard-stop"):
        errors.append("BUDGET_MODE must be 'soft-warn' or 'hard-stop'")

    if settings.app_env == "production" and settings.app_debug:
        errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
