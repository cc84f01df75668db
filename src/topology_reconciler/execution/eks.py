"""
EKS control plane client.

This client implements ControlPlaneClient on top of the boto3 EKS API.

Behavior
Reads map EKS describe shapes onto topology model types.
Writes map topology model types onto EKS request shapes.
Optional waiters block until asynchronous creates and deletes settle.

Timeouts
Every call carries botocore connect and read timeouts. SDK level retries
are limited because retry policy lives in the reconciler.

Error translation
Throttling, server errors, timeouts and busy resources are transient:
CollectionError on reads, retryable ApplyError on writes.
Credential failures and access denied become AuthError.
Invalid requests and changes EKS cannot make in place are non retryable.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
    ProfileNotFound,
    ReadTimeoutError,
    WaiterError,
)

from topology_reconciler.core.errors import ApplyError, AuthError, CollectionError, ReconcilerError
from topology_reconciler.core.types import (
    Cluster,
    FargateProfile,
    FargateSelector,
    NodeGroup,
    NodeGroupKind,
    Taint,
    TaintEffect,
)
from topology_reconciler.execution.base import ControlPlaneClient, ControlPlaneClientFactory

logger = logging.getLogger(__name__)

AUTH_CODES = frozenset(
    {
        "AccessDeniedException",
        "AuthFailure",
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidClientTokenId",
        "InvalidSignatureException",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
    }
)

TRANSIENT_CODES = frozenset(
    {
        "InternalFailure",
        "RequestLimitExceeded",
        "RequestTimeout",
        "ResourceInUseException",
        "ServerException",
        "ServiceUnavailableException",
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
    }
)

TRANSPORT_ERRORS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

NODE_GROUP_IMMUTABLE_FIELDS = ("kind", "instance_type")

_CAPACITY_TYPES = {
    NodeGroupKind.on_demand: "ON_DEMAND",
    NodeGroupKind.spot: "SPOT",
}

_TAINT_EFFECTS = {
    TaintEffect.no_schedule: "NO_SCHEDULE",
    TaintEffect.prefer_no_schedule: "PREFER_NO_SCHEDULE",
    TaintEffect.no_execute: "NO_EXECUTE",
}


class ResourceNotFound(ApplyError):
    """The EKS resource does not exist. Reads turn this into None."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def translate_client_error(exc: ClientError, action: str, write: bool) -> ReconcilerError:
    """Map a botocore ClientError onto the core error taxonomy."""
    code = _error_code(exc)
    message = f"{action}: {code}: {exc}"

    if code == "ResourceNotFoundException":
        return ResourceNotFound(message)
    if code in AUTH_CODES:
        return AuthError(message)
    if code in TRANSIENT_CODES:
        return ApplyError(message, retryable=True) if write else CollectionError(message)
    return ApplyError(message, retryable=False) if write else CollectionError(message)


@contextmanager
def translate_errors(action: str, write: bool = False) -> Iterator[None]:
    """Translate boto3 and botocore exceptions raised inside the block."""
    try:
        yield
    except ClientError as exc:
        raise translate_client_error(exc, action, write) from exc
    except (NoCredentialsError, PartialCredentialsError, ProfileNotFound) as exc:
        raise AuthError(f"{action}: {exc}") from exc
    except TRANSPORT_ERRORS as exc:
        message = f"{action}: {exc}"
        raise (ApplyError(message, retryable=True) if write else CollectionError(message)) from exc
    except WaiterError as exc:
        raise ApplyError(f"{action}: did not settle: {exc}", retryable=False) from exc
    except ParamValidationError as exc:
        raise ApplyError(f"{action}: invalid request: {exc}", retryable=False) from exc
    except BotoCoreError as exc:
        message = f"{action}: {exc}"
        raise (ApplyError(message, retryable=False) if write else CollectionError(message)) from exc


def _non_empty(**kwargs: Any) -> dict[str, Any]:
    """Drop empty optional request fields. EKS rejects empty tag and label maps."""
    return {k: v for k, v in kwargs.items() if v not in (None, {}, [], "")}


def cluster_from_eks(region: str, raw: dict[str, Any]) -> Cluster:
    vpc = raw.get("resourcesVpcConfig") or {}
    return Cluster(
        name=str(raw["name"]),
        region=region,
        kubernetes_version=str(raw.get("version", "")),
        tags=dict(raw.get("tags") or {}),
        role_arn=str(raw.get("roleArn", "")),
        subnet_ids=tuple(vpc.get("subnetIds") or ()),
    )


def node_group_from_eks(raw: dict[str, Any]) -> NodeGroup:
    scaling = raw.get("scalingConfig") or {}
    capacity = str(raw.get("capacityType", "ON_DEMAND"))
    kinds = {v: k for k, v in _CAPACITY_TYPES.items()}
    effects = {v: k for k, v in _TAINT_EFFECTS.items()}
    instance_types = raw.get("instanceTypes") or [""]

    taints = tuple(
        sorted(
            (
                Taint(
                    key=str(t["key"]),
                    value=str(t.get("value", "")),
                    effect=effects.get(str(t.get("effect", "NO_SCHEDULE")), TaintEffect.no_schedule),
                )
                for t in raw.get("taints") or []
            ),
            key=lambda t: t.key,
        )
    )

    return NodeGroup(
        name=str(raw["nodegroupName"]),
        kind=kinds.get(capacity, NodeGroupKind.on_demand),
        instance_type=str(instance_types[0]),
        min_size=int(scaling.get("minSize", 0)),
        max_size=int(scaling.get("maxSize", 0)),
        desired_size=int(scaling.get("desiredSize", 0)),
        taints=taints,
        tags=dict(raw.get("tags") or {}),
        labels=dict(raw.get("labels") or {}),
        node_role_arn=str(raw.get("nodeRole", "")),
        subnet_ids=tuple(raw.get("subnets") or ()),
    )


def fargate_profile_from_eks(raw: dict[str, Any]) -> FargateProfile:
    selectors = tuple(
        sorted(
            (
                FargateSelector(namespace=str(s.get("namespace", "")), labels=dict(s.get("labels") or {}))
                for s in raw.get("selectors") or []
            ),
            key=lambda s: s.namespace,
        )
    )
    return FargateProfile(
        name=str(raw["fargateProfileName"]),
        selectors=selectors,
        pod_execution_role_arn=str(raw.get("podExecutionRoleArn", "")),
        subnet_ids=tuple(raw.get("subnets") or ()),
    )


def _taint_to_eks(t: Taint) -> dict[str, str]:
    return {"key": t.key, "value": t.value, "effect": _TAINT_EFFECTS[t.effect]}


def _selector_to_eks(s: FargateSelector) -> dict[str, Any]:
    return _non_empty(namespace=s.namespace, labels=dict(s.labels))


@dataclass(frozen=True)
class EksClientConfig:
    """
    EKS client configuration.

    profile_name
    Optional shared credentials profile. None uses the default chain.

    connect_timeout_seconds, read_timeout_seconds
    Per call timeouts. A timeout becomes a transient error.

    sdk_max_attempts
    botocore retry attempts per call, kept low so backoff stays in one place.

    wait
    Block on EKS waiters after creates and deletes, so a later operation on
    the same cluster finds its dependency ACTIVE or gone.
    """

    profile_name: str | None = None
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 30.0
    sdk_max_attempts: int = 1
    wait: bool = True
    waiter_delay_seconds: int = 15
    waiter_max_attempts: int = 80

    def botocore_config(self) -> BotoConfig:
        return BotoConfig(
            connect_timeout=self.connect_timeout_seconds,
            read_timeout=self.read_timeout_seconds,
            retries={"max_attempts": self.sdk_max_attempts, "mode": "standard"},
        )


class EksControlPlaneClient(ControlPlaneClient):
    """
    ControlPlaneClient for one region backed by a boto3 EKS client.

    client
    A boto3 EKS client. Tests pass a stubbed client.
    """

    def __init__(self, client: Any, region: str, config: EksClientConfig | None = None) -> None:
        self._client = client
        self._region = region
        self._config = config or EksClientConfig()

    def _wait(self, waiter_name: str, action: str, **kwargs: Any) -> None:
        if not self._config.wait:
            return
        logger.info("waiting for %s (%s)", action, waiter_name)
        with translate_errors(action, write=True):
            self._client.get_waiter(waiter_name).wait(
                WaiterConfig={
                    "Delay": self._config.waiter_delay_seconds,
                    "MaxAttempts": self._config.waiter_max_attempts,
                },
                **kwargs,
            )

    def _paginate(self, operation: str, key: str, action: str, **kwargs: Any) -> list[str]:
        names: list[str] = []
        with translate_errors(action):
            for page in self._client.get_paginator(operation).paginate(**kwargs):
                names.extend(str(n) for n in page.get(key, []))
        return sorted(names)

    def list_clusters(self) -> list[str]:
        return self._paginate("list_clusters", "clusters", f"list clusters {self._region}")

    def describe_cluster(self, name: str) -> Cluster | None:
        try:
            with translate_errors(f"describe cluster {self._region}/{name}"):
                raw = self._client.describe_cluster(name=name)["cluster"]
        except ResourceNotFound:
            return None
        return cluster_from_eks(self._region, raw)

    def list_node_groups(self, cluster: str) -> list[str]:
        try:
            return self._paginate(
                "list_nodegroups", "nodegroups", f"list node groups {cluster}", clusterName=cluster
            )
        except ResourceNotFound:
            return []

    def describe_node_group(self, cluster: str, name: str) -> NodeGroup | None:
        try:
            with translate_errors(f"describe node group {cluster}/{name}"):
                raw = self._client.describe_nodegroup(clusterName=cluster, nodegroupName=name)["nodegroup"]
        except ResourceNotFound:
            return None
        return node_group_from_eks(raw)

    def list_fargate_profiles(self, cluster: str) -> list[str]:
        try:
            return self._paginate(
                "list_fargate_profiles",
                "fargateProfileNames",
                f"list fargate profiles {cluster}",
                clusterName=cluster,
            )
        except ResourceNotFound:
            return []

    def describe_fargate_profile(self, cluster: str, name: str) -> FargateProfile | None:
        try:
            with translate_errors(f"describe fargate profile {cluster}/{name}"):
                raw = self._client.describe_fargate_profile(clusterName=cluster, fargateProfileName=name)[
                    "fargateProfile"
                ]
        except ResourceNotFound:
            return None
        return fargate_profile_from_eks(raw)

    def create_cluster(self, cluster: Cluster) -> None:
        action = f"create cluster {self._region}/{cluster.name}"
        with translate_errors(action, write=True):
            self._client.create_cluster(
                name=cluster.name,
                version=cluster.kubernetes_version,
                roleArn=cluster.role_arn,
                resourcesVpcConfig={"subnetIds": list(cluster.subnet_ids)},
                **_non_empty(tags=dict(cluster.tags)),
            )
        self._wait("cluster_active", action, name=cluster.name)

    def update_cluster(self, cluster: Cluster, changes: tuple[str, ...]) -> None:
        action = f"update cluster {self._region}/{cluster.name}"

        if "kubernetes_version" in changes:
            with translate_errors(action, write=True):
                self._client.update_cluster_version(name=cluster.name, version=cluster.kubernetes_version)

        if "tags" in changes:
            with translate_errors(action, write=True):
                raw = self._client.describe_cluster(name=cluster.name)["cluster"]
            self._sync_tags(str(raw["arn"]), dict(raw.get("tags") or {}), dict(cluster.tags), action)

    def delete_cluster(self, name: str) -> None:
        action = f"delete cluster {self._region}/{name}"
        try:
            with translate_errors(action, write=True):
                self._client.delete_cluster(name=name)
        except ResourceNotFound:
            return
        self._wait("cluster_deleted", action, name=name)

    def create_node_group(self, cluster: str, node_group: NodeGroup) -> None:
        action = f"create node group {cluster}/{node_group.name}"
        with translate_errors(action, write=True):
            self._client.create_nodegroup(
                clusterName=cluster,
                nodegroupName=node_group.name,
                scalingConfig={
                    "minSize": node_group.min_size,
                    "maxSize": node_group.max_size,
                    "desiredSize": node_group.desired_size,
                },
                subnets=list(node_group.subnet_ids),
                instanceTypes=[node_group.instance_type],
                nodeRole=node_group.node_role_arn,
                capacityType=_CAPACITY_TYPES[node_group.kind],
                **_non_empty(
                    taints=[_taint_to_eks(t) for t in node_group.taints],
                    labels=dict(node_group.labels),
                    tags=dict(node_group.tags),
                ),
            )
        self._wait("nodegroup_active", action, clusterName=cluster, nodegroupName=node_group.name)

    def update_node_group(self, cluster: str, node_group: NodeGroup, changes: tuple[str, ...]) -> None:
        action = f"update node group {cluster}/{node_group.name}"

        immutable = [f for f in NODE_GROUP_IMMUTABLE_FIELDS if f in changes]
        if immutable:
            raise ApplyError(f"{action}: {', '.join(immutable)} cannot change in place, replace the node group")

        with translate_errors(action, write=True):
            raw = self._client.describe_nodegroup(clusterName=cluster, nodegroupName=node_group.name)["nodegroup"]
        current = node_group_from_eks(raw)

        request: dict[str, Any] = {}
        if {"min_size", "max_size", "desired_size"} & set(changes):
            request["scalingConfig"] = {
                "minSize": node_group.min_size,
                "maxSize": node_group.max_size,
                "desiredSize": node_group.desired_size,
            }

        if "taints" in changes:
            wanted_keys = {t.key for t in node_group.taints}
            request["taints"] = _non_empty(
                addOrUpdateTaints=[_taint_to_eks(t) for t in node_group.taints if t not in current.taints],
                removeTaints=[_taint_to_eks(t) for t in current.taints if t.key not in wanted_keys],
            )

        if "labels" in changes:
            request["labels"] = _non_empty(
                addOrUpdateLabels={k: v for k, v in node_group.labels.items() if current.labels.get(k) != v},
                removeLabels=[k for k in current.labels if k not in node_group.labels],
            )

        request = _non_empty(**request)
        if request:
            with translate_errors(action, write=True):
                self._client.update_nodegroup_config(
                    clusterName=cluster, nodegroupName=node_group.name, **request
                )

        if "tags" in changes:
            self._sync_tags(str(raw["nodegroupArn"]), current.tags, dict(node_group.tags), action)

    def delete_node_group(self, cluster: str, name: str) -> None:
        action = f"delete node group {cluster}/{name}"
        try:
            with translate_errors(action, write=True):
                self._client.delete_nodegroup(clusterName=cluster, nodegroupName=name)
        except ResourceNotFound:
            return
        self._wait("nodegroup_deleted", action, clusterName=cluster, nodegroupName=name)

    def create_fargate_profile(self, cluster: str, profile: FargateProfile) -> None:
        action = f"create fargate profile {cluster}/{profile.name}"
        with translate_errors(action, write=True):
            self._client.create_fargate_profile(
                fargateProfileName=profile.name,
                clusterName=cluster,
                podExecutionRoleArn=profile.pod_execution_role_arn,
                selectors=[_selector_to_eks(s) for s in profile.selectors],
                **_non_empty(subnets=list(profile.subnet_ids)),
            )
        self._wait("fargate_profile_active", action, clusterName=cluster, fargateProfileName=profile.name)

    def update_fargate_profile(self, cluster: str, profile: FargateProfile, changes: tuple[str, ...]) -> None:
        # Profiles are immutable in EKS, so an update is delete, wait, create.
        action = f"replace fargate profile {cluster}/{profile.name}"
        try:
            with translate_errors(action, write=True):
                self._client.delete_fargate_profile(clusterName=cluster, fargateProfileName=profile.name)
        except ResourceNotFound:
            pass
        else:
            with translate_errors(action, write=True):
                self._client.get_waiter("fargate_profile_deleted").wait(
                    clusterName=cluster,
                    fargateProfileName=profile.name,
                    WaiterConfig={
                        "Delay": self._config.waiter_delay_seconds,
                        "MaxAttempts": self._config.waiter_max_attempts,
                    },
                )
        self.create_fargate_profile(cluster, profile)

    def delete_fargate_profile(self, cluster: str, name: str) -> None:
        action = f"delete fargate profile {cluster}/{name}"
        try:
            with translate_errors(action, write=True):
                self._client.delete_fargate_profile(clusterName=cluster, fargateProfileName=name)
        except ResourceNotFound:
            return
        self._wait("fargate_profile_deleted", action, clusterName=cluster, fargateProfileName=name)

    def _sync_tags(self, arn: str, current: dict[str, str], desired: dict[str, str], action: str) -> None:
        removed = sorted(k for k in current if k not in desired)
        changed = {k: v for k, v in desired.items() if current.get(k) != v}

        with translate_errors(action, write=True):
            if removed:
                self._client.untag_resource(resourceArn=arn, tagKeys=removed)
            if changed:
                self._client.tag_resource(resourceArn=arn, tags=changed)


class EksClientFactory(ControlPlaneClientFactory):
    """
    Build EksControlPlaneClient instances per region from one boto3 session.

    session
    Optional boto3 Session. Built lazily from the config profile when absent.
    """

    def __init__(self, config: EksClientConfig | None = None, session: Any | None = None) -> None:
        self._config = config or EksClientConfig()
        self._session = session
        self._lock = threading.Lock()

    def _get_session(self) -> Any:
        if self._session is None:
            self._session = boto3.Session(profile_name=self._config.profile_name)
        return self._session

    def for_region(self, region: str) -> EksControlPlaneClient:
        # Region workers call this concurrently, sessions are not thread safe.
        with self._lock:
            try:
                client = self._get_session().client(
                    "eks",
                    region_name=region,
                    config=self._config.botocore_config(),
                )
            except ProfileNotFound as exc:
                raise AuthError(f"eks client {region}: {exc}") from exc
        return EksControlPlaneClient(client=client, region=region, config=self._config)
