"""
HMRC Integration Module

Connects entities to HMRC Making Tax Digital: OAuth authorization,
business discovery, and syncing of business details and obligations.
"""

from .service import HMRCIntegrationService
from .client import HMRCClient, HMRCConfig
from .encryption import TokenEncryption

__all__ = ['HMRCIntegrationService', 'HMRCClient', 'HMRCConfig', 'TokenEncryption']
