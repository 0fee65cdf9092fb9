"""Namespace and environment management."""

from __future__ import annotations

from sluice.environments.lane import ProductionLane
from sluice.environments.manager import (
    CommandDeployer,
    Deployer,
    EnvironmentManager,
    NullDeployer,
)
from sluice.environments.namespaces import (
    CommandProvisioner,
    NamespaceManager,
    NullProvisioner,
    Provisioner,
    namespace_key,
)

__all__ = [
    "CommandDeployer",
    "CommandProvisioner",
    "Deployer",
    "EnvironmentManager",
    "NamespaceManager",
    "NullDeployer",
    "NullProvisioner",
    "ProductionLane",
    "Provisioner",
    "namespace_key",
]
