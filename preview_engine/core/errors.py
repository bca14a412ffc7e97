# preview_engine/core/errors.py

from typing import Optional


# -----------------------------
# Base Errors
# -----------------------------

class PreviewError(Exception):
    """Base class for all preview engine errors."""
    pass


# -----------------------------
# Validation Errors
# -----------------------------

class InvalidAppNameError(PreviewError, ValueError):
    """Application name contains characters that are not allowed."""
    pass


class RuleParseError(PreviewError, ValueError):
    """Traefik router rule cannot be parsed."""
    pass


# -----------------------------
# Synthesis Errors
# -----------------------------

class InternalInvariantError(PreviewError):
    """
    Input that this system constructed itself violates an invariant.

    Raised instead of aborting so callers and tests can observe the bug.
    """
    pass


class RouteConversionError(PreviewError):
    """A stored routing object cannot be converted back into a route."""
    pass


# -----------------------------
# Infrastructure Errors
# -----------------------------

class InfrastructureError(PreviewError):
    """Backend or network failure while talking to the orchestrator."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class InfrastructureConflictError(InfrastructureError):
    pass


class InfrastructureNotFoundError(InfrastructureError):
    pass


# -----------------------------
# Registry Errors
# -----------------------------

class RegistryError(PreviewError):
    """Image registry could not resolve an image."""
    pass
