"""Monarch Money MCP Server - MCP server and GraphQL client for Monarch Money."""

from __future__ import annotations

from .auth import AuthService, Session
from .transport import GraphQLClient, RequestOptions, TransportState
from .monarch_client import MonarchClient
from .server import main
from .exceptions import (
    CauseCategory,
    MonarchError,
    AuthError,
    ValidationError,
    NetworkError,
    RateLimitError,
    DependencyDownError,
    APIError,
    EmptyResponseError,
)

__version__ = "0.1.0"
__all__ = [
    "AuthService",
    "Session",
    "GraphQLClient",
    "RequestOptions",
    "TransportState",
    "MonarchClient",
    "main",
    "CauseCategory",
    "MonarchError",
    "AuthError",
    "ValidationError",
    "NetworkError",
    "RateLimitError",
    "DependencyDownError",
    "APIError",
    "EmptyResponseError",
]
