"""Azure configuration settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AzureSettings(BaseSettings):
    """Azure configuration settings.

    Only required when ARTIFACT_BACKEND is 'azure' or when scanned PDFs
    should be read through Document Intelligence.
    """

    # Azure Storage Account
    AZURE_STORAGE_CONNECTION_STRING: str = Field(
        default="", description="Azure Storage Account connection string"
    )
    AZURE_STORAGE_CONTAINER_NAME: str = Field(
        default="liquidaciones", description="Azure Storage container name"
    )

    # Azure Document Intelligence (OCR de facturas escaneadas)
    AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT: str = Field(
        default="", description="Azure Document Intelligence endpoint URL"
    )
    AZURE_DOCUMENT_INTELLIGENCE_KEY: str = Field(
        default="", description="Azure Document Intelligence API key"
    )

    model_config = SettingsConfigDict(env_file="app/env/v1/azure.env", extra="ignore")

    @property
    def ocr_enabled(self) -> bool:
        return bool(self.AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT and self.AZURE_DOCUMENT_INTELLIGENCE_KEY)


# Create settings instance
SETTINGS = AzureSettings()
