"""Provider clients for compute instances and tenant databases."""

from provisioner.providers.compute import ComputeProvisioner, RailwayComputeProvisioner
from provisioner.providers.database import DatabaseProvisioner, NeonDatabaseProvisioner

__all__ = [
    "ComputeProvisioner",
    "DatabaseProvisioner",
    "NeonDatabaseProvisioner",
    "RailwayComputeProvisioner",
]
