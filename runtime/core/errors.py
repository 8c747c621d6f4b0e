"""Core runtime error types.

The keeper fails closed at startup (missing config or secrets) and degrades
gracefully at runtime: transient chain errors are logged and retried, only a
keeper that is not whitelisted halts. The API layer maps these types to JSON
payloads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class KeeperRuntimeError(Exception):
    """Base class for runtime errors."""


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(KeeperRuntimeError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class ConfigurationError(KeeperRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ConflictError(KeeperRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ContractViolationError(KeeperRuntimeError):
    def __init__(self, message: str, code: str = "CONTRACT_VIOLATION", details: Any | None = None):
        self.code = code
        self.details = details
        super().__init__(message)


class ChainReadError(KeeperRuntimeError):
    """A read against the chain failed. Always safe to retry."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class BroadcastError(KeeperRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class NotWhitelistedError(KeeperRuntimeError):
    def __init__(self, network_tag: str):
        self.network_tag = network_tag
        super().__init__(f"Network {network_tag} is not whitelisted in the sequencer")
