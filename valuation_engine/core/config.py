import os
from dataclasses import dataclass
from pydantic import BaseModel


def _env_float(name: str, default: float) -> float:
    # Invalid or non-positive values fall back to the default
    try:
        value = float(os.getenv(name, default))
    except ValueError:
        return default
    return value if value > 0 else default


class Settings(BaseModel):
    # Basic
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    DEFAULT_ORG_ID: str = os.getenv("DEFAULT_ORG_ID", "default")

    # Persistence
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./valuation.db")

    # AI provider
    MODEL_PROVIDER: str = os.getenv("MODEL_PROVIDER", "mock")  # mock | openai
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    VALUATION_OUTPUT_FORMAT: str | None = os.getenv("VALUATION_OUTPUT_FORMAT")

    # Data providers
    GEO_PROVIDER: str = os.getenv("GEO_PROVIDER", "http")                   # mock | http
    GEO_BASE_URL: str = os.getenv("GEO_BASE_URL", "https://data.geopf.fr/geocodage/search")
    GEO_TIMEOUT_SECONDS: float = _env_float("GEO_TIMEOUT_SECONDS", 6.0)
    TRANSACTIONS_PROVIDER: str = os.getenv("TRANSACTIONS_PROVIDER", "http")  # mock | http
    TRANSACTIONS_BASE_URL: str = os.getenv(
        "TRANSACTIONS_BASE_URL", "https://apidf-preprod.cerema.fr/dvf_opendata/mutations/"
    )
    TRANSACTIONS_API_TOKEN: str | None = os.getenv("TRANSACTIONS_API_TOKEN")
    TRANSACTIONS_TIMEOUT_SECONDS: float = _env_float("TRANSACTIONS_TIMEOUT_SECONDS", 20.0)

    # Comparables query cache
    CACHE_TTL_DAYS: float = _env_float("CACHE_TTL_DAYS", 7.0)

    # Security
    API_KEY: str | None = os.getenv("API_KEY")
    RATE_LIMIT_RPM: int = int(os.getenv("RATE_LIMIT_RPM", "60"))

    # CORS
    ALLOW_ORIGINS: str = os.getenv("ALLOW_ORIGINS", "*")

    # Rate-limit cache
    USE_REDIS: bool = os.getenv("USE_REDIS", "false").lower() == "true"
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RATE_LIMIT_CACHE_TTL_SECONDS: int = int(os.getenv("RATE_LIMIT_CACHE_TTL_SECONDS", "120"))

    # Metrics
    PROMETHEUS_ENABLED: bool = os.getenv("PROMETHEUS_ENABLED", "true").lower() == "true"

    def comparables_config(self) -> "ComparablesConfig":
        return ComparablesConfig(
            transactions_base_url=self.TRANSACTIONS_BASE_URL,
            transactions_api_token=(self.TRANSACTIONS_API_TOKEN or "").strip() or None,
            transactions_timeout_seconds=self.TRANSACTIONS_TIMEOUT_SECONDS,
            cache_ttl_days=self.CACHE_TTL_DAYS,
        )


@dataclass(frozen=True)
class ComparablesConfig:
    """
    Tunables for the comparable-sales search, injected into the transaction
    client, the query cache and the comparables service.
    """
    transactions_base_url: str = "https://apidf-preprod.cerema.fr/dvf_opendata/mutations/"
    transactions_api_token: str | None = None
    transactions_timeout_seconds: float = 20.0
    page_size: int = 500
    max_pages: int = 6
    max_bbox_degrees: float = 0.02

    radius_ladder_m: tuple[int, ...] = (1000, 2000, 3000, 5000, 7000, 10000)
    target_count: int = 100
    lookback_years: int = 10

    surface_range: tuple[float, float] = (0.5, 2.0)
    min_price_per_m2: float = 500.0
    min_price_per_m2_land: float = 5.0

    trend_years: int = 5
    recent_sales_in_prompt: int = 5

    cache_ttl_days: float = 7.0
    cache_format_version: str = "v1"
    center_precision: int = 4


settings = Settings()
