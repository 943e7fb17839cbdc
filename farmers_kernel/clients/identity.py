"""
IdentityAuthority protocol and supporting types.

Contract:
    ``IdentityAuthority`` is the interface to the remote, authoritative
    identity service (users, organizations, roles).  Implementations must
    be safe for concurrent use by chunk workers and must distinguish a
    definitive "not found" (``IdentityNotFoundError``) from "could not
    answer" (``IdentityUnavailableError``).  Permission failures raise
    ``IdentityPermissionError``.

Architecture:
    farmers_kernel/clients.  The wire format of the service is owned by
    the implementation; the engine only depends on this protocol.

    ``call_with_retries`` is the bounded inline retry used by pipeline
    stages for transient failures.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar, runtime_checkable

from farmers_kernel.exceptions import FarmersKernelError
from farmers_kernel.logging_config import get_logger

logger = get_logger("clients.identity")

ROLE_FARMER = "farmer"
DEFAULT_COUNTRY_CODE = "+91"

T = TypeVar("T")


# =============================================================================
# Supporting DTOs
# =============================================================================


@dataclass(frozen=True)
class IdentityUser:
    """User as known by the identity authority."""

    id: str
    username: str
    phone_number: str
    full_name: str = ""
    country_code: str = DEFAULT_COUNTRY_CODE
    email: str | None = None


@dataclass(frozen=True)
class Organization:
    """Organization (FPO) as known by the identity authority."""

    id: str
    name: str
    status: str = "ACTIVE"


@dataclass(frozen=True)
class CreateUserRequest:
    username: str
    phone_number: str
    full_name: str
    country_code: str = DEFAULT_COUNTRY_CODE
    email: str | None = None


# =============================================================================
# IdentityAuthority Protocol
# =============================================================================


@runtime_checkable
class IdentityAuthority(Protocol):
    """Remote identity service consumed by the pipeline and reconciliation."""

    def get_user(self, user_id: str) -> IdentityUser:
        """Raises IdentityNotFoundError if the user does not exist."""
        ...

    def find_user_by_mobile(self, phone_number: str) -> IdentityUser | None:
        """Return the user registered with ``phone_number`` or None."""
        ...

    def create_user(self, request: CreateUserRequest) -> IdentityUser: ...

    def get_organization(self, org_id: str) -> Organization:
        """Raises IdentityNotFoundError if the organization does not exist."""
        ...

    def check_role(self, user_id: str, role: str) -> bool: ...

    def assign_role(self, user_id: str, org_id: str, role: str) -> None: ...

    def health_check(self) -> bool: ...


# =============================================================================
# Transient retry
# =============================================================================


def is_transient(exc: BaseException) -> bool:
    """True when ``exc`` describes a condition that may clear on retry."""
    if isinstance(exc, FarmersKernelError):
        return exc.retryable
    return isinstance(exc, (TimeoutError, ConnectionError))


def call_with_retries(
    fn: Callable[[], T],
    *,
    operation: str,
    attempts: int = 3,
    delay_seconds: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying transient failures up to ``attempts`` times.

    Non-transient errors propagate immediately.  The last transient error
    propagates once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc) or attempt == attempts:
                raise
            logger.warning(
                "identity_call_retry",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": str(exc),
                },
            )
            sleep(delay_seconds * attempt)
    raise AssertionError("unreachable")
