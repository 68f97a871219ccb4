from __future__ import annotations

from collections import defaultdict

import pytest

from provisioner.config import settings
from provisioner.errors import ResourceNotFound
from provisioner.schemas import ResourceDescriptor
from provisioner.state import ObservedStatus


@pytest.fixture(autouse=True)
def _fast_timings(monkeypatch):
    """Collapse backoff, polling and probe delays so tests run instantly."""
    monkeypatch.setattr(settings, "retry_backoff_base", 0.0)
    monkeypatch.setattr(settings, "retry_backoff_max", 0.0)
    monkeypatch.setattr(settings, "status_poll_interval", 0.0)
    monkeypatch.setattr(settings, "status_poll_attempts", 3)
    monkeypatch.setattr(settings, "readiness_interval", 0.0)
    monkeypatch.setattr(settings, "readiness_max_attempts", 3)
    monkeypatch.setattr(settings, "readiness_probe", "none")
    monkeypatch.setattr(settings, "api_token", "")
    yield


class FakeHypervisor:
    """In-memory stand-in for HypervisorClient.

    Resources live in `resources` (id -> {"status", "config"}). Every call is
    appended to `calls`. Errors queued in `failures[operation]` are raised,
    one per call, before the operation takes effect; `fail_ids` makes every
    call for an identifier raise.
    """

    def __init__(self):
        self.resources: dict[int, dict] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.fail_ids: dict[int, Exception] = {}
        self.status_script: dict[int, list[ObservedStatus]] = {}
        self.create_status = ObservedStatus.CREATED
        self.ignore: set[str] = set()  # operations accepted but never applied

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    def add(self, resource_id: int, status: ObservedStatus, **config) -> None:
        self.resources[resource_id] = {"status": status, "config": config}

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] not in ("query", "describe")]

    def _enter(self, operation: str, resource_id: int, *extra) -> None:
        self.calls.append((operation, resource_id, *extra))
        if resource_id in self.fail_ids:
            raise self.fail_ids[resource_id]
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    async def query(self, resource_id: int) -> ObservedStatus:
        self._enter("query", resource_id)
        script = self.status_script.get(resource_id)
        if script:
            return script.pop(0)
        resource = self.resources.get(resource_id)
        return resource["status"] if resource else ObservedStatus.ABSENT

    async def describe(self, resource_id: int) -> dict:
        self._enter("describe", resource_id)
        resource = self.resources.get(resource_id)
        if resource is None:
            raise ResourceNotFound(f"{resource_id} not found", resource_id, status_code=404)
        return dict(resource["config"])

    async def create(self, descriptor: ResourceDescriptor) -> None:
        self._enter("create", descriptor.id)
        if "create" in self.ignore:
            return
        payload = descriptor.to_payload()
        self.resources[descriptor.id] = {
            "status": self.create_status,
            "config": {k: payload[k] for k in ("hostname", "cores", "memoryMb", "diskGb")},
        }

    async def start(self, resource_id: int) -> None:
        self._enter("start", resource_id)
        self._require(resource_id)
        if "start" not in self.ignore:
            self.resources[resource_id]["status"] = ObservedStatus.RUNNING

    async def stop(self, resource_id: int, graceful: bool = True) -> None:
        self._enter("stop", resource_id, graceful)
        self._require(resource_id)
        if ("stop" if graceful else "force_stop") not in self.ignore:
            self.resources[resource_id]["status"] = ObservedStatus.STOPPED

    async def delete(self, resource_id: int) -> None:
        self._enter("delete", resource_id)
        self._require(resource_id)
        if "delete" not in self.ignore:
            del self.resources[resource_id]

    def _require(self, resource_id: int) -> None:
        if resource_id not in self.resources:
            raise ResourceNotFound(f"{resource_id} not found", resource_id, status_code=404)


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def descriptor() -> ResourceDescriptor:
    return ResourceDescriptor(
        id=201,
        hostname="logs-01",
        cores=2,
        memory_mb=4096,
        disk_gb=32,
        network={"bridge": "vmbr0", "ip": "10.0.1.201/24", "gateway": "10.0.1.1"},
        ssh_public_key="ssh-ed25519 AAAATEST ops@example",
    )


@pytest.fixture
def make_descriptor():
    """Factory for minimal descriptors: make_descriptor(202, cores=4)."""
    def _make(resource_id: int, **overrides) -> ResourceDescriptor:
        fields = {"id": resource_id, "hostname": f"ct-{resource_id}"}
        fields.update(overrides)
        return ResourceDescriptor(**fields)
    return _make
