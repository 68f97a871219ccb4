"""Load resource descriptors from a YAML inventory file.

Format:
    resources:
      - id: 201
        hostname: logs-01
        cores: 2
        memory_mb: 4096
        disk_gb: 32
        network: {bridge: vmbr0, ip: 10.0.1.201/24, gateway: 10.0.1.1}
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from provisioner.schemas import Inventory, ResourceDescriptor


class InventoryError(Exception):
    """Inventory file missing, unreadable or invalid."""


def load_inventory(path: str | Path) -> list[ResourceDescriptor]:
    """Parse and validate every descriptor before anything is reconciled."""
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InventoryError(f"Cannot read inventory {path}: {e}") from e
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        raw = {}
    if isinstance(raw, list):
        raw = {"resources": raw}
    if not isinstance(raw, dict):
        raise InventoryError(f"{path}: expected a mapping with a 'resources' list")

    try:
        inventory = Inventory.model_validate(raw)
    except ValidationError as e:
        raise InventoryError(f"{path}: {e}") from e
    return inventory.resources
