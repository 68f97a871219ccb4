"""Error taxonomy for hypervisor calls and reconciliation."""

from __future__ import annotations


class HypervisorError(Exception):
    """Base exception for hypervisor communication and lifecycle errors."""

    kind = "HypervisorError"

    def __init__(
        self,
        message: str,
        resource_id: int | None = None,
        retriable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id
        self.retriable = retriable
        self.status_code = status_code


class TransientApiError(HypervisorError):
    """Timeout, connection reset or 5xx. Worth retrying."""

    kind = "TransientApiError"

    def __init__(self, message: str, resource_id: int | None = None, status_code: int | None = None):
        super().__init__(message, resource_id, retriable=True, status_code=status_code)


class FatalApiError(HypervisorError):
    """Validation or other client error. Never retried."""

    kind = "FatalApiError"

    def __init__(self, message: str, resource_id: int | None = None, status_code: int | None = None):
        super().__init__(message, resource_id, retriable=False, status_code=status_code)


class AuthorizationError(FatalApiError):
    """Hypervisor rejected our credentials (401/403)."""

    kind = "AuthorizationError"


class ResourceNotFound(FatalApiError):
    """A mutating call targeted an identifier the hypervisor doesn't know."""

    kind = "ResourceNotFound"


class ResourceConflict(HypervisorError):
    """Existing resource does not match its descriptor.

    Surfaced to the caller, never auto-resolved.
    """

    kind = "ResourceConflict"

    def __init__(self, resource_id: int, differences: dict[str, tuple[object, object]]):
        fields = ", ".join(
            f"{name} (wanted {wanted!r}, found {found!r})"
            for name, (wanted, found) in sorted(differences.items())
        )
        super().__init__(
            f"Resource {resource_id} exists with a different specification: {fields}",
            resource_id,
        )
        self.differences = differences


class ReadinessTimeout(HypervisorError):
    """Resource is running but never became reachable."""

    kind = "ReadinessTimeout"

    def __init__(self, resource_id: int, address: str, port: int, attempts: int):
        super().__init__(
            f"Resource {resource_id} not reachable at {address}:{port} after {attempts} attempts",
            resource_id,
        )
        self.address = address
        self.port = port
        self.attempts = attempts


class SettleTimeout(HypervisorError):
    """Mutation was accepted but status never reached the expected value."""

    kind = "SettleTimeout"

    def __init__(self, resource_id: int, expected: set, last_status):
        wanted = "|".join(sorted(s.value for s in expected))
        super().__init__(
            f"Resource {resource_id} did not reach {wanted} (last status: {last_status.value})",
            resource_id,
        )
        self.expected = expected
        self.last_status = last_status


class UnknownStatus(HypervisorError):
    """Hypervisor reported a status the reconciler refuses to act on."""

    kind = "UnknownStatus"

    def __init__(self, resource_id: int):
        super().__init__(f"Resource {resource_id} is in an unknown state", resource_id)
