from typing import Optional

from ..config import Config
from .aws import AWSProvider
from .base import ClusterInfo, ClusterNetwork, Provider, Subnet


def get_provider(region: Optional[str] = None, profile: Optional[str] = None) -> Provider:
    """Return the AWS provider for ``region``, falling back to the configured defaults."""
    return AWSProvider(region=region or Config.AWS_REGION, profile=profile or Config.AWS_PROFILE or None)


__all__ = ["AWSProvider", "ClusterInfo", "ClusterNetwork", "Provider", "Subnet", "get_provider"]
