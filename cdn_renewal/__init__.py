"""
CDN certificate auto-renewal.

This package contains:
- transport: Authenticated REST calls and pagination
- cdn: CDN endpoint directory
- certstore: Certificate store operations
- certbot: Certbot DNS-01 issuance wrapper
- orchestrator: Renewal sequence per endpoint and in batch
- config_loader: Configuration loading and validation
- logger: Centralized logging setup
- helpers: Common utility functions
- notification: Notification system for renewal events
"""

from .logger import setup_logger, get_logger
from .config_loader import (
    load_config,
    parse_config,
    Config,
    ConfigurationError,
)
from .transport import (
    ApiClient,
    ApiError,
    TransportError,
    UnexpectedStatusError,
    NotFoundError,
)
from .cdn import CdnDirectory, CdnEndpoint
from .certstore import CertificateStore, Certificate
from .certbot import CertbotAuthority, IssuedMaterial, IssuanceError
from .orchestrator import (
    RenewalOrchestrator,
    RenewalResult,
    RenewalStatus,
    RenewalStep,
    RenewalError,
    BatchAbortedError,
)
from .helpers import RENEWAL_THRESHOLD_SECONDS, certificate_name
from .notification import NotificationManager

__all__ = [
    # Logger
    "setup_logger",
    "get_logger",
    # Config
    "load_config",
    "parse_config",
    "Config",
    "ConfigurationError",
    # Transport
    "ApiClient",
    "ApiError",
    "TransportError",
    "UnexpectedStatusError",
    "NotFoundError",
    # Providers
    "CdnDirectory",
    "CdnEndpoint",
    "CertificateStore",
    "Certificate",
    "CertbotAuthority",
    "IssuedMaterial",
    "IssuanceError",
    # Orchestration
    "RenewalOrchestrator",
    "RenewalResult",
    "RenewalStatus",
    "RenewalStep",
    "RenewalError",
    "BatchAbortedError",
    # Helpers
    "RENEWAL_THRESHOLD_SECONDS",
    "certificate_name",
    # Notifications
    "NotificationManager",
]
