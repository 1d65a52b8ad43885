"""Read-only deployment metadata: component name -> network address."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

DEFAULT_DEPLOYMENT_FILE = Path("deployment-info-oop.json")
FACTORY_COMPONENT = "FreelanceContractFactory"


def load_deployment(path: Path = DEFAULT_DEPLOYMENT_FILE) -> Mapping[str, str]:
    """Load ``{"contracts": {...}}`` or a flat ``{name: address}`` JSON file."""
    if not path.exists():
        raise FileNotFoundError(
            f"Deployment file {path} not found; deploy the contracts first and "
            f"point --deployment at the generated file"
        )
    with path.open() as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Deployment file {path} must contain a JSON object")

    contracts = data.get("contracts", data)
    if not isinstance(contracts, dict):
        raise ValueError(f"'contracts' in {path} must be an object")
    return MappingProxyType({str(k): str(v) for k, v in contracts.items() if isinstance(v, str)})
