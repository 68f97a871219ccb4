"""Resource descriptors and reconciliation results.

Descriptors are pydantic models so an inventory is validated in full before
any reconciliation starts. Results are plain dataclasses created fresh for
every call.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from provisioner.errors import HypervisorError
from provisioner.state import Action, DesiredState, ObservedStatus, Outcome


# --- Descriptors ---

class NetworkSpec(BaseModel):
    """Single network interface attached to a resource."""
    model_config = ConfigDict(frozen=True)

    name: str = "eth0"
    bridge: str = "vmbr0"
    ip: str = "dhcp"  # CIDR address or "dhcp"
    gateway: str | None = None
    vlan: int | None = Field(None, ge=1, le=4094)

    @field_validator("ip")
    @classmethod
    def _cidr_or_dhcp(cls, value: str) -> str:
        if value.strip().lower() == "dhcp":
            return "dhcp"
        try:
            ipaddress.ip_interface(value)
        except ValueError:
            raise ValueError(f"ip must be an address in CIDR notation or 'dhcp', got {value!r}")
        return value

    @field_validator("gateway")
    @classmethod
    def _gateway_is_address(cls, value: str | None) -> str | None:
        if value is not None:
            ipaddress.ip_address(value)
        return value

    @model_validator(mode="after")
    def _gateway_needs_static_ip(self) -> "NetworkSpec":
        if self.gateway and self.ip == "dhcp":
            raise ValueError("gateway requires a static ip")
        return self


class MountSpec(BaseModel):
    """Bind or network mount exposed inside a resource."""
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False


class ResourceDescriptor(BaseModel):
    """Immutable specification of one container on the hypervisor."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0, description="Numeric identifier, unique across the fleet")
    hostname: str = Field(..., min_length=1)
    cores: int = Field(1, gt=0)
    memory_mb: int = Field(512, gt=0)
    disk_gb: int = Field(8, gt=0)
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    mounts: tuple[MountSpec, ...] = ()
    ssh_public_key: str = ""
    # Address used for readiness probes; falls back to hostname
    address: str | None = None

    @property
    def probe_address(self) -> str:
        if self.address:
            return self.address
        if self.network.ip != "dhcp":
            return str(ipaddress.ip_interface(self.network.ip).ip)
        return self.hostname

    def to_payload(self) -> dict[str, Any]:
        """Build the JSON body for the create call."""
        network: dict[str, Any] = {
            "name": self.network.name,
            "bridge": self.network.bridge,
            "ip": self.network.ip,
        }
        if self.network.gateway:
            network["gateway"] = self.network.gateway
        if self.network.vlan is not None:
            network["vlan"] = self.network.vlan

        payload: dict[str, Any] = {
            "id": self.id,
            "hostname": self.hostname,
            "cores": self.cores,
            "memoryMb": self.memory_mb,
            "diskGb": self.disk_gb,
            "network": network,
            "mounts": [
                {"source": m.source, "target": m.target, "readOnly": m.read_only}
                for m in self.mounts
            ],
        }
        if self.ssh_public_key:
            payload["sshPublicKey"] = self.ssh_public_key
        return payload

    def spec_differences(self, config: dict[str, Any]) -> dict[str, tuple[object, object]]:
        """Compare against a config reported by the hypervisor.

        Only fields the hypervisor reports are compared. Returns
        field -> (wanted, found) for every mismatch.
        """
        wanted = {
            "hostname": ("hostname", self.hostname),
            "cores": ("cores", self.cores),
            "memory_mb": ("memoryMb", self.memory_mb),
            "disk_gb": ("diskGb", self.disk_gb),
        }
        differences: dict[str, tuple[object, object]] = {}
        for name, (key, value) in wanted.items():
            if key not in config or config[key] is None:
                continue
            found = config[key]
            if str(found) != str(value):
                differences[name] = (value, found)
        return differences


class Inventory(BaseModel):
    """Set of descriptors reconciled together."""

    resources: list[ResourceDescriptor] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "Inventory":
        seen: set[int] = set()
        for resource in self.resources:
            if resource.id in seen:
                raise ValueError(f"duplicate resource id {resource.id}")
            seen.add(resource.id)
        return self


# --- Results ---

@dataclass
class ErrorDetail:
    """What went wrong, in a form a caller can report or serialize."""
    kind: str
    message: str
    retriable: bool = False
    status_code: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorDetail:
        if isinstance(exc, HypervisorError):
            return cls(
                kind=exc.kind,
                message=exc.message,
                retriable=exc.retriable,
                status_code=exc.status_code,
            )
        return cls(kind="InternalError", message=str(exc) or type(exc).__name__)


@dataclass
class ReconciliationResult:
    """Result of reconciling one resource."""
    resource_id: int
    outcome: Outcome
    status: ObservedStatus
    changed: bool = False
    error: ErrorDetail | None = None
    actions: list[Action] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.outcome == Outcome.FAILED

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"changed": self.changed, "status": self.status.value}
        if self.error is not None:
            data["error"] = {
                "kind": self.error.kind,
                "message": self.error.message,
            }
        return data


@dataclass
class ReconciliationPlan:
    """Actions a reconciliation would take, computed without mutating anything."""
    resource_id: int
    desired: DesiredState
    observed: ObservedStatus
    actions: list[Action] = field(default_factory=list)
    error: ErrorDetail | None = None

    @property
    def is_noop(self) -> bool:
        return not any(a.is_mutation for a in self.actions)
