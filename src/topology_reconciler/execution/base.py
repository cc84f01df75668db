"""
Control plane interfaces.

Goal
Define stable interfaces for reading and writing cluster topology without
binding the collector or the reconciler to a specific SDK.

Design notes
Clients speak topology model types, not request shapes.
describe calls return None when the entity does not exist.
Every call raises only the core error taxonomy:
CollectionError for transient read failures,
AuthError for permanent credential failures,
ApplyError for write failures, with a retryable flag.
"""

from __future__ import annotations

from typing import Protocol

from topology_reconciler.core.types import Cluster, FargateProfile, NodeGroup


class ControlPlaneClient(Protocol):
    """
    Cluster control plane client bound to one region.

    describe_cluster returns the cluster without node groups or profiles.
    The collector fills those in with the list and describe calls below.

    update calls receive the names of the fields that differ.
    """

    def list_clusters(self) -> list[str]:
        """Return cluster names in the region."""

    def describe_cluster(self, name: str) -> Cluster | None:
        """Return the cluster or None."""

    def list_node_groups(self, cluster: str) -> list[str]:
        """Return node group names of a cluster."""

    def describe_node_group(self, cluster: str, name: str) -> NodeGroup | None:
        """Return the node group or None."""

    def list_fargate_profiles(self, cluster: str) -> list[str]:
        """Return Fargate profile names of a cluster."""

    def describe_fargate_profile(self, cluster: str, name: str) -> FargateProfile | None:
        """Return the Fargate profile or None."""

    def create_cluster(self, cluster: Cluster) -> None:
        """Create a cluster. Node groups and profiles are separate operations."""

    def update_cluster(self, cluster: Cluster, changes: tuple[str, ...]) -> None:
        """Bring an existing cluster to the given state."""

    def delete_cluster(self, name: str) -> None:
        """Delete a cluster."""

    def create_node_group(self, cluster: str, node_group: NodeGroup) -> None:
        """Create a node group."""

    def update_node_group(self, cluster: str, node_group: NodeGroup, changes: tuple[str, ...]) -> None:
        """Bring an existing node group to the given state."""

    def delete_node_group(self, cluster: str, name: str) -> None:
        """Delete a node group."""

    def create_fargate_profile(self, cluster: str, profile: FargateProfile) -> None:
        """Create a Fargate profile."""

    def update_fargate_profile(self, cluster: str, profile: FargateProfile, changes: tuple[str, ...]) -> None:
        """Bring an existing Fargate profile to the given state."""

    def delete_fargate_profile(self, cluster: str, name: str) -> None:
        """Delete a Fargate profile."""


class ControlPlaneClientFactory(Protocol):
    """
    Create a control plane client for a region.

    This decouples callers from credentials, endpoints and timeouts.
    """

    def for_region(self, region: str) -> ControlPlaneClient:
        """Return a client for the given region."""
