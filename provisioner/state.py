"""Centralized state enums for resource reconciliation.

The transition table that combines these lives in state_machine.py.
"""

from enum import Enum


class DesiredState(str, Enum):
    """What the caller wants for a resource."""

    PRESENT = "present"  # Exists, running state left alone
    ABSENT = "absent"
    STARTED = "started"  # Exists, running and reachable
    STOPPED = "stopped"


class ObservedStatus(str, Enum):
    """Current reality of a resource as reported by the hypervisor."""

    ABSENT = "absent"  # No resource with this identifier
    CREATED = "created"  # Provisioned, never started
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"  # Hypervisor reported something we don't understand


class Outcome(str, Enum):
    """Outcome of a single reconciliation call."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"


class Action(str, Enum):
    """Steps the reconciler can take against a resource."""

    CREATE = "create"
    START = "start"
    STOP = "stop"
    DELETE = "delete"
    PROBE = "probe"  # Readiness check, not a mutation

    @property
    def is_mutation(self) -> bool:
        return self is not Action.PROBE


class ProbeOutcome(str, Enum):
    """Result of a bounded readiness wait."""

    READY = "ready"
    TIMED_OUT = "timed_out"
