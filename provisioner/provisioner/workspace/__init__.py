"""Tenant workspace rendering and lifecycle."""

from provisioner.workspace.builder import WorkspaceBuilder

__all__ = ["WorkspaceBuilder"]
