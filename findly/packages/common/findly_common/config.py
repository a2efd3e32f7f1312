from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "findly/.env"), env_ignore_empty=True, extra="ignore"
    )

    SEMANTIC_SQL_DIALECT: str = "bigquery"
    SEMANTIC_MEGA_TABLE_NAME: str = "mega_table"
    SEMANTIC_MEGA_TABLE_AGGREGATED_NAME: str = "mega_table_aggregated"
    SEMANTIC_DEFAULT_TIME_GRANULARITY: str = "DAY"

    # Upper bounds for a single request; large cross-products are rejected up front.
    SEMANTIC_MAX_DIMENSIONS: int = 20
    SEMANTIC_MAX_METRICS: int = 50

    LOG_LEVEL: str = "INFO"
    OTEL_SERVICE_NAME: str = "findly-semantic"


settings = Settings()  # type: ignore
