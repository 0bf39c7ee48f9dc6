from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "canary-rollout-service"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Environment
    ENV: str = "dev"  # dev, staging, production
    DEBUG: bool = False
    SHUTDOWN_GRACE_SECONDS: float = 5.0

    # Metrics gateway (Prometheus)
    PROMETHEUS_URL: str = "http://prometheus:9090"
    METRICS_TIMEOUT_SECONDS: float = 10.0
    METRICS_WINDOW: str = "5m"
    METRIC_HISTORY_LIMIT: int = 500

    # Advisory summaries (OpenAI-compatible chat completions endpoint)
    ADVISOR_ENABLED: bool = False
    ADVISOR_URL: str = "http://localhost:8080/v1/chat/completions"
    ADVISOR_MODEL: str = "gpt-4-turbo"
    ADVISOR_API_KEY: Optional[str] = None
    ADVISOR_TIMEOUT_SECONDS: float = 15.0

    # Traffic execution
    TRAFFIC_EXECUTOR: str = "dry_run"  # dry_run or kubectl
    CANARY_INGRESS_SUFFIX: str = "-canary"
    CANARY_HEADER_NAME: str = "X-Canary"
    CANARY_COOKIE_NAME: str = "canary"
    KUBECTL_TIMEOUT_SECONDS: float = 30.0
    AUTO_EXECUTE_ROLLBACK: bool = False

    # API
    DEFAULT_LIST_LIMIT: int = 50
    RATE_LIMIT_MUTATIONS: str = "120/minute"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )

settings = Settings()
