"""
Adapters package for the EHR Service.

Contains the outbound HTTP client and the security service client. These
adapters encapsulate:

- Base URLs and request shapes
- Retry policy and in-flight de-duplication
- Error handling that maps to shared errors
"""

from .http_client import CachedResponse, ResilientHTTPClient
from .security_client import SecurityClient

__all__ = [
    "CachedResponse",
    "ResilientHTTPClient",
    "SecurityClient",
]
