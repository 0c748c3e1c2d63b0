"""Configuration management for the eksforge application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration with sensible defaults."""

    # Provider
    AWS_REGION: str = os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-west-2"))
    AWS_PROFILE: str = os.getenv("AWS_PROFILE", "")

    # Timeouts (in seconds)
    WAIT_TIMEOUT: int = int(os.getenv("EKSFORGE_WAIT_TIMEOUT", "1500"))  # 25 minutes
    NODE_READY_TIMEOUT: int = int(os.getenv("EKSFORGE_NODE_READY_TIMEOUT", "1200"))
    POLL_INTERVAL: float = float(os.getenv("EKSFORGE_POLL_INTERVAL", "10"))

    # Retry configuration
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_DELAY: float = float(os.getenv("RETRY_DELAY", "1.0"))

    # Cluster defaults
    DEFAULT_VPC_CIDR: str = os.getenv("EKSFORGE_DEFAULT_VPC_CIDR", "192.168.0.0/16")
    DEFAULT_NODE_TYPE: str = os.getenv("EKSFORGE_DEFAULT_NODE_TYPE", "m5.large")
    DEFAULT_NODE_COUNT: int = int(os.getenv("EKSFORGE_DEFAULT_NODE_COUNT", "2"))

    # Keep the historical early return after a successful GitOps bootstrap
    GITOPS_SHORT_CIRCUIT: bool = _env_bool("EKSFORGE_GITOPS_SHORT_CIRCUIT", "true")

    # API / notifications
    API_KEY: str = os.getenv("EKSFORGE_API_KEY", "eksforge-secret")
    SLACK_WEBHOOK: str = os.getenv("EKSFORGE_SLACK_WEBHOOK", "")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("api_key", "password", "secret", "token", "certificate")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if cls.WAIT_TIMEOUT <= 0 or cls.NODE_READY_TIMEOUT <= 0:
            raise ValueError("Timeouts must be positive")
        if cls.POLL_INTERVAL <= 0:
            raise ValueError("EKSFORGE_POLL_INTERVAL must be positive")

# Don't validate on import to allow for dynamic configuration
# Call Config.validate() explicitly when needed
