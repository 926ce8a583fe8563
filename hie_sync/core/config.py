"""
Application configuration
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "HIE Sync"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    # Sandbox deployments never reach the network; document queries return a canned set
    SANDBOX_MODE: bool = False

    # Database
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def ASYNC_DATABASE_URL(self) -> str:
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

    # Redis (document query queue)
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_QUEUE_DB: int = 1

    # Remote network (HIE)
    NETWORK_API_URL: str = "https://integration.rest.api.commonwellalliance.org"
    NETWORK_API_TOKEN: Optional[str] = None
    NETWORK_TIMEOUT_SEC: int = 120
    NETWORK_MAX_RETRIES: int = 2
    NETWORK_PURPOSE_OF_USE: str = "TREATMENT"
    NETWORK_USER_ROLE: str = "222405004"  # SNOMED: practitioner
    SYSTEM_ROOT_OID: str = "2.16.840.1.113883.3.9621"

    # Content store
    DOCUMENT_STORE_TYPE: str = "local"  # 'local' or 's3'
    DOCUMENT_STORE_DIR: str = "./documents"
    MEDICAL_DOCUMENTS_BUCKET: Optional[str] = None
    AWS_REGION: str = "us-east-1"

    # Canonical store and converter
    FHIR_SERVER_URL: str = "http://fhir-server:8080"
    FHIR_SERVER_TIMEOUT_SEC: int = 30
    FHIR_CONVERTER_URL: Optional[str] = None
    FHIR_CONVERTER_TEMPLATE: str = "ccd.hbs"
    FHIR_CONVERTER_TIMEOUT_SEC: int = 60

    # Status sink and usage reporting
    WEBHOOK_URL: Optional[str] = None
    WEBHOOK_TIMEOUT_SEC: int = 20
    USAGE_URL: Optional[str] = None

    # Document query tuning
    DOC_QUERY_CHUNK_SIZE: int = 10
    DOC_DOWNLOAD_JITTER_MAX_SEC: float = 2.0
    DOC_CHUNK_DELAY_MAX_SEC: float = 5.0
    JITTER_MIN_FRACTION: float = 0.1

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
