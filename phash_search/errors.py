"""
Error types raised by the hash search engine.

FormatError and InvalidQueryError reach the caller unchanged. IndexBuildError
is raised by the cache layer and handled inside the engine, which degrades
to a linear scan for the affected hash type.
"""

from typing import Any, Dict, Optional


class HashSearchError(Exception):
    """Base exception for all hash search errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FormatError(HashSearchError, ValueError):
    """A fingerprint is malformed or has the wrong length for its hash type."""

    def __init__(self, message: str, hash_type: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.hash_type = hash_type


class InvalidQueryError(HashSearchError, ValueError):
    """Search parameters (threshold, limit, weights, batch size) are out of range."""


class IndexBuildError(HashSearchError):
    """
    Building an index failed.

    Covers data-source failures, malformed fetched data, fetch timeouts and
    waiters that gave up on a peer's in-flight build.
    """

    def __init__(self, message: str, hash_type: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.hash_type = hash_type
