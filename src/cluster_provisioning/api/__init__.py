"""HTTP access to the cluster management API."""

from .client import ApiResponse, TransportClient, decode_response

__all__ = [
    "ApiResponse",
    "TransportClient",
    "decode_response",
]
