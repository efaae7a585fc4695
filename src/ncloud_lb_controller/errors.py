# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Exceptions raised by the load balancer controller."""

from __future__ import annotations


class ControllerError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ControllerError, ValueError):
    """Raised when user configuration is invalid."""


class CredentialsError(ControllerError):
    """Raised when cloud credentials cannot be obtained."""


class StateError(ControllerError):
    """Raised when the state persisted on a Service cannot be decoded."""


class Cancelled(ControllerError):
    """Raised when a wait is interrupted by shutdown or a deadline."""


class CloudAPIError(ControllerError):
    """Raised when a cloud API call fails.

    `code` is the provider return code when the provider sent one, `status`
    the HTTP status when the request reached the API gateway.
    """

    DUPLICATE_CODES = frozenset({"1200013"})

    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        self.message = message
        self.code = code
        self.status = status
        super().__init__(self._format())

    def _format(self) -> str:
        if self.code:
            return f"{self.message} (code {self.code})"
        return self.message

    @property
    def is_duplicate(self) -> bool:
        if self.code in self.DUPLICATE_CODES:
            return True
        return "duplicate" in self.message.lower()


class NotReadyError(ControllerError):
    """Raised when a load balancer is not yet in a usable state."""


class LoadBalancerFailedError(NotReadyError):
    """Raised when a load balancer reports an error or terminating status."""


class RegistrationError(ControllerError):
    """Raised when no target could be registered into a target group."""


class TeardownError(ControllerError):
    """Raised when cloud resources could not all be removed."""

    def __init__(self, message: str, failed: list[str] | None = None):
        self.failed = list(failed or [])
        super().__init__(message)


class ReconcileError(ControllerError):
    """Raised by the reconciler to surface an error and requeue the object."""

    def __init__(self, message: str, requeue_after: float):
        self.requeue_after = requeue_after
        super().__init__(message)
