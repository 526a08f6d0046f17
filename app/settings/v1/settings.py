"""Main settings configuration."""

from .azure import AzureSettings
from .general import GeneralSettings


class Settings:
    """Main settings class that combines all configuration settings."""

    def __init__(self):
        """Initialize all configuration settings."""
        self.GENERAL = GeneralSettings()
        self.AZURE = AzureSettings()

    def __repr__(self) -> str:
        """Return string representation of settings.

        Returns:
            str: String representation of settings.
        """
        return f"Settings(GENERAL={self.GENERAL}, AZURE={self.AZURE})"


# Global settings instance
SETTINGS = Settings()
