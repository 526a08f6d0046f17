"""General configuration settings."""

from decimal import Decimal
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeneralSettings(BaseSettings):
    """General application settings."""

    # Application configuration
    APP_NAME: str = Field(
        default="Medical Claims Liquidation API",
        description="Application name"
    )

    APP_VERSION: str = Field(
        default="1.0.0",
        description="Application version"
    )

    DEBUG: bool = Field(
        default=False,
        description="Debug mode"
    )

    PRODUCTION: bool = Field(
        default=False,
        description="Production mode"
    )

    # MongoDB configuration
    MONGODB_URL: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URL"
    )

    MONGODB_DATABASE: str = Field(
        default="liquidaciones",
        description="MongoDB database name"
    )

    MONGODB_COLLECTION_CASES: str = Field(
        default="cases",
        description="Collection holding case (radicado) records"
    )

    MONGODB_COLLECTION_DOCUMENTS: str = Field(
        default="documents",
        description="Collection holding submitted documents and their line items"
    )

    MONGODB_COLLECTION_RULES: str = Field(
        default="rules",
        description="Collection holding versioned billing rules"
    )

    MONGODB_COLLECTION_RESULTS: str = Field(
        default="liquidation_results",
        description="Collection holding current and historical liquidation results"
    )

    MONGODB_COLLECTION_EVENTS: str = Field(
        default="case_events",
        description="Collection holding the append-only case event log"
    )

    MONGODB_COLLECTION_LEASES: str = Field(
        default="case_leases",
        description="Collection holding per-case liquidation leases"
    )

    # Logging configuration
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level"
    )

    LOG_FORMAT: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format"
    )

    # Request limits
    MAX_FILE_SIZE: int = Field(
        default=20 * 1024 * 1024,  # 20MB
        description="Maximum document size in bytes"
    )

    # File validation
    ALLOWED_FILE_EXTENSIONS: List[str] = Field(
        default=["pdf", "txt", "csv"],
        description="Allowed document extensions"
    )

    # Retry configuration
    NUMBER_OF_RETRIES: int = Field(
        default=3,
        description="Number of retry attempts"
    )

    SECONDS_BETWEEN_RETRIES: int = Field(
        default=2,
        description="Seconds between retry attempts"
    )

    # Liquidation configuration
    EXTRACTION_MAX_WORKERS: int = Field(
        default=4,
        description="Worker threads used to extract documents of a single run"
    )

    LIQUIDATION_RUN_WORKERS: int = Field(
        default=2,
        description="Worker threads used to execute background liquidation runs"
    )

    LIQUIDATION_LEASE_SECONDS: int = Field(
        default=600,
        description="Seconds before an abandoned per-case lease may be taken over"
    )

    RANGE_THRESHOLDS: List[Decimal] = Field(
        default=[Decimal("100000"), Decimal("500000"), Decimal("1000000")],
        description="Lower bounds of ranges 2, 3 and 4 (lower bound inclusive)"
    )

    RECONCILIATION_TOLERANCE: Decimal = Field(
        default=Decimal("0.01"),
        description="Maximum difference tolerated between report rows and computed totals"
    )

    # Contract value lookup
    CONTRACT_LOOKUP_URL: str = Field(
        default="",
        description="Base URL of the contract value service, empty disables lookups"
    )

    CONTRACT_LOOKUP_TIMEOUT: float = Field(
        default=5.0,
        description="Timeout in seconds for contract value lookups"
    )

    # Artifact storage
    ARTIFACT_BACKEND: str = Field(
        default="local",
        description="Artifact backend: 'local' (filesystem) or 'azure' (Blob Storage)"
    )

    ARTIFACT_LOCAL_DIR: str = Field(
        default="storage/artifacts",
        description="Root directory for the local artifact backend"
    )

    # Report configuration
    REPORT_SHEET_TITLE: str = Field(
        default="Liquidacion",
        description="Title of the report worksheet"
    )

    # CORS configuration
    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="CORS allowed origins"
    )

    model_config = SettingsConfigDict(
        env_file="app/env/v1/general.env",
        case_sensitive=True,
        extra="ignore"
    )


# Create settings instance
SETTINGS = GeneralSettings()
