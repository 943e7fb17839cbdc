"""Clients for external collaborators."""

from farmers_kernel.clients.identity import (
    ROLE_FARMER,
    CreateUserRequest,
    IdentityAuthority,
    IdentityUser,
    Organization,
    call_with_retries,
    is_transient,
)

__all__ = [
    "ROLE_FARMER",
    "CreateUserRequest",
    "IdentityAuthority",
    "IdentityUser",
    "Organization",
    "call_with_retries",
    "is_transient",
]
