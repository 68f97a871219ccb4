"""Idempotent lifecycle reconciliation for containers on a hypervisor."""

from provisioner.client import HypervisorClient
from provisioner.fleet import FleetDriver, FleetReport
from provisioner.reconciler import ReconcileProgress, Reconciler
from provisioner.schemas import (
    ErrorDetail,
    MountSpec,
    NetworkSpec,
    ReconciliationPlan,
    ReconciliationResult,
    ResourceDescriptor,
)
from provisioner.state import DesiredState, ObservedStatus, Outcome

__version__ = "0.1.0"

__all__ = [
    "HypervisorClient",
    "Reconciler",
    "ReconcileProgress",
    "FleetDriver",
    "FleetReport",
    "ResourceDescriptor",
    "NetworkSpec",
    "MountSpec",
    "ReconciliationResult",
    "ReconciliationPlan",
    "ErrorDetail",
    "DesiredState",
    "ObservedStatus",
    "Outcome",
]
