"""
In memory control plane.

This control plane is used for tests and local simulations.
It behaves like a cluster database keyed by region and cluster name.

Features
- Implements the full ControlPlaneClient surface per region
- Rejects changes EKS cannot make in place, such as a node group instance type
- Can inject read failures per region and write failures per target id
- Records every write call for assertions
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace

from topology_reconciler.core.errors import ApplyError
from topology_reconciler.core.types import Cluster, FargateProfile, NodeGroup

NODE_GROUP_IMMUTABLE_FIELDS = ("kind", "instance_type")

Failure = BaseException | list[BaseException]


def _next_failure(failures: dict[str, Failure], key: str) -> BaseException | None:
    """
    Return the failure to raise for key, if any.

    A single exception is raised on every call.
    A list is consumed one entry per call, then calls succeed.
    """
    failure = failures.get(key)
    if failure is None:
        return None
    if isinstance(failure, list):
        if not failure:
            return None
        return failure.pop(0)
    return failure


@dataclass
class InMemoryControlPlane:
    """
    In memory control plane.

    clusters
    region to cluster name to Cluster, including node groups and profiles.

    read_failures
    region to failure, raised by list_clusters.

    write_failures
    target id to failure, raised by create, update and delete calls.
    Target ids follow Operation.target_id, for example
    us-east-1/main or us-east-1/main/nodegroup/on-demand.
    """

    clusters: dict[str, dict[str, Cluster]] = field(default_factory=dict)
    read_failures: dict[str, Failure] = field(default_factory=dict)
    write_failures: dict[str, Failure] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def for_region(self, region: str) -> "InMemoryRegionClient":
        return InMemoryRegionClient(plane=self, region=region)

    def add_cluster(self, cluster: Cluster) -> None:
        with self._lock:
            self.clusters.setdefault(cluster.region, {})[cluster.name] = cluster

    def get_cluster(self, region: str, name: str) -> Cluster | None:
        with self._lock:
            return self.clusters.get(region, {}).get(name)


@dataclass
class InMemoryRegionClient:
    """ControlPlaneClient view of one region of an InMemoryControlPlane."""

    plane: InMemoryControlPlane
    region: str

    def _clusters(self) -> dict[str, Cluster]:
        return self.plane.clusters.setdefault(self.region, {})

    def _check_read(self) -> None:
        failure = _next_failure(self.plane.read_failures, self.region)
        if failure is not None:
            raise failure

    def _write(self, verb: str, target: str) -> None:
        target_id = f"{self.region}/{target}"
        self.plane.calls.append(f"{verb} {target_id}")
        failure = _next_failure(self.plane.write_failures, target_id)
        if failure is not None:
            raise failure

    def _require_cluster(self, name: str) -> Cluster:
        current = self._clusters().get(name)
        if current is None:
            raise ApplyError(f"cluster {self.region}/{name} not found")
        return current

    def list_clusters(self) -> list[str]:
        with self.plane._lock:
            self._check_read()
            return sorted(self._clusters())

    def describe_cluster(self, name: str) -> Cluster | None:
        with self.plane._lock:
            current = self._clusters().get(name)
            if current is None:
                return None
            return replace(current, node_groups=(), fargate_profiles=())

    def list_node_groups(self, cluster: str) -> list[str]:
        with self.plane._lock:
            current = self._clusters().get(cluster)
            return sorted(ng.name for ng in current.node_groups) if current else []

    def describe_node_group(self, cluster: str, name: str) -> NodeGroup | None:
        with self.plane._lock:
            current = self._clusters().get(cluster)
            return current.node_group(name) if current else None

    def list_fargate_profiles(self, cluster: str) -> list[str]:
        with self.plane._lock:
            current = self._clusters().get(cluster)
            return sorted(fp.name for fp in current.fargate_profiles) if current else []

    def describe_fargate_profile(self, cluster: str, name: str) -> FargateProfile | None:
        with self.plane._lock:
            current = self._clusters().get(cluster)
            return current.fargate_profile(name) if current else None

    def create_cluster(self, cluster: Cluster) -> None:
        with self.plane._lock:
            self._write("create", cluster.name)
            if cluster.name in self._clusters():
                raise ApplyError(f"cluster {self.region}/{cluster.name} already exists")
            self._clusters()[cluster.name] = replace(
                cluster, region=self.region, node_groups=(), fargate_profiles=()
            )

    def update_cluster(self, cluster: Cluster, changes: tuple[str, ...]) -> None:
        with self.plane._lock:
            self._write("update", cluster.name)
            current = self._require_cluster(cluster.name)
            self._clusters()[cluster.name] = replace(
                current,
                kubernetes_version=cluster.kubernetes_version,
                tags=dict(cluster.tags),
            )

    def delete_cluster(self, name: str) -> None:
        with self.plane._lock:
            self._write("delete", name)
            current = self._require_cluster(name)
            if current.node_groups or current.fargate_profiles:
                raise ApplyError(
                    f"cluster {self.region}/{name} still has node groups or fargate profiles",
                    retryable=True,
                )
            del self._clusters()[name]

    def create_node_group(self, cluster: str, node_group: NodeGroup) -> None:
        with self.plane._lock:
            self._write("create", f"{cluster}/nodegroup/{node_group.name}")
            current = self._require_cluster(cluster)
            if current.node_group(node_group.name) is not None:
                raise ApplyError(f"node group {cluster}/{node_group.name} already exists")
            groups = tuple(sorted(current.node_groups + (node_group,), key=lambda ng: ng.name))
            self._clusters()[cluster] = replace(current, node_groups=groups)

    def update_node_group(self, cluster: str, node_group: NodeGroup, changes: tuple[str, ...]) -> None:
        with self.plane._lock:
            self._write("update", f"{cluster}/nodegroup/{node_group.name}")
            current = self._require_cluster(cluster)
            existing = current.node_group(node_group.name)
            if existing is None:
                raise ApplyError(f"node group {cluster}/{node_group.name} not found")

            immutable = [f for f in NODE_GROUP_IMMUTABLE_FIELDS if f in changes]
            if immutable:
                raise ApplyError(
                    f"node group {cluster}/{node_group.name} cannot change {', '.join(immutable)} in place"
                )

            groups = tuple(
                replace(node_group, node_role_arn=ng.node_role_arn, subnet_ids=ng.subnet_ids)
                if ng.name == node_group.name
                else ng
                for ng in current.node_groups
            )
            self._clusters()[cluster] = replace(current, node_groups=groups)

    def delete_node_group(self, cluster: str, name: str) -> None:
        with self.plane._lock:
            self._write("delete", f"{cluster}/nodegroup/{name}")
            current = self._require_cluster(cluster)
            groups = tuple(ng for ng in current.node_groups if ng.name != name)
            self._clusters()[cluster] = replace(current, node_groups=groups)

    def create_fargate_profile(self, cluster: str, profile: FargateProfile) -> None:
        with self.plane._lock:
            self._write("create", f"{cluster}/fargateprofile/{profile.name}")
            current = self._require_cluster(cluster)
            if current.fargate_profile(profile.name) is not None:
                raise ApplyError(f"fargate profile {cluster}/{profile.name} already exists")
            profiles = tuple(sorted(current.fargate_profiles + (profile,), key=lambda fp: fp.name))
            self._clusters()[cluster] = replace(current, fargate_profiles=profiles)

    def update_fargate_profile(self, cluster: str, profile: FargateProfile, changes: tuple[str, ...]) -> None:
        # Profiles are immutable, an update is a replace.
        with self.plane._lock:
            self._write("update", f"{cluster}/fargateprofile/{profile.name}")
            current = self._require_cluster(cluster)
            profiles = tuple(
                profile if fp.name == profile.name else fp for fp in current.fargate_profiles
            )
            self._clusters()[cluster] = replace(current, fargate_profiles=profiles)

    def delete_fargate_profile(self, cluster: str, name: str) -> None:
        with self.plane._lock:
            self._write("delete", f"{cluster}/fargateprofile/{name}")
            current = self._require_cluster(cluster)
            profiles = tuple(fp for fp in current.fargate_profiles if fp.name != name)
            self._clusters()[cluster] = replace(current, fargate_profiles=profiles)
