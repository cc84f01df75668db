"""
Observed state collector.

Purpose
Rebuild the observed topology from list and describe calls, one region at a
time, with regions collected concurrently.

Failure isolation
A region whose collection fails is marked unknown, never empty, so the diff
engine cannot plan deletes against state it could not see. Other regions
carry on.

Transient failures (CollectionError) are retried with backoff.
Auth failures (AuthError) are surfaced at once without retry.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, TypeVar

from topology_reconciler.core.errors import AuthError, CollectionError, ReconcilerError
from topology_reconciler.core.events import EventSink
from topology_reconciler.core.retry import RetryCancelled, RetryPolicy, call_with_retry
from topology_reconciler.core.types import Cluster, ObservationStatus, ObservedRegion, ObservedTopology
from topology_reconciler.execution.base import ControlPlaneClient, ControlPlaneClientFactory

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CollectorConfig:
    """
    Collector configuration.

    retry
    Backoff policy for transient read failures.

    max_workers
    Upper bound on regions collected at the same time.

    managed_tag_key
    When set, clusters without this tag key are ignored. Ignored clusters are
    invisible to the diff engine, so they are never updated or deleted.
    """

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_workers: int = 8
    managed_tag_key: str | None = None


class ObservedStateCollector:
    """Collect observed topology through a ControlPlaneClientFactory."""

    def __init__(
        self,
        client_factory: ControlPlaneClientFactory,
        config: CollectorConfig | None = None,
        events: EventSink | None = None,
    ) -> None:
        self._factory = client_factory
        self._config = config or CollectorConfig()
        self._events = events

    def collect(self, regions: list[str], cancel: threading.Event | None = None) -> ObservedTopology:
        """Collect every region concurrently. Order follows the sorted region names."""
        names = sorted(set(regions))
        if not names:
            return ObservedTopology()

        workers = max(1, min(len(names), self._config.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="collect") as pool:
            observed = list(pool.map(lambda r: self.collect_region(r, cancel), names))

        return ObservedTopology(regions=tuple(observed))

    def collect_region(self, region: str, cancel: threading.Event | None = None) -> ObservedRegion:
        """Collect one region. Failures become an unknown ObservedRegion."""
        try:
            client = self._factory.for_region(region)
            clusters = self._read_region(client, region, cancel)
        except AuthError as exc:
            return self._unknown(region, "auth_error", str(exc))
        except CollectionError as exc:
            return self._unknown(region, "collection_error", str(exc))
        except RetryCancelled as exc:
            return self._unknown(region, "collection_error", f"cancelled after {exc.attempts} attempts: {exc}")
        except ReconcilerError as exc:
            return self._unknown(region, "collection_error", f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("unexpected error collecting region %s", region)
            return self._unknown(region, "collection_error", f"unexpected {type(exc).__name__}: {exc}")

        logger.info("collected region %s: %d clusters", region, len(clusters))
        return ObservedRegion(name=region, status=ObservationStatus.known, clusters=clusters)

    def _unknown(self, region: str, kind: str, message: str) -> ObservedRegion:
        logger.error("collection failed for region %s (%s): %s", region, kind, message)
        if self._events is not None:
            self._events.emit(
                {"type": "collection_failed", "region": region, "error_kind": kind, "error": message}
            )
        return ObservedRegion(
            name=region,
            status=ObservationStatus.unknown,
            error=message,
            error_kind=kind,
        )

    def _call(self, fn: Callable[[], T], cancel: threading.Event | None, describe: str) -> T:
        value, _ = call_with_retry(fn, self._config.retry, cancel=cancel, describe=describe)
        return value

    def _read_region(
        self,
        client: ControlPlaneClient,
        region: str,
        cancel: threading.Event | None,
    ) -> tuple[Cluster, ...]:
        clusters: list[Cluster] = []
        tag_key = self._config.managed_tag_key

        for name in self._call(client.list_clusters, cancel, f"list clusters {region}"):
            cluster = self._call(lambda: client.describe_cluster(name), cancel, f"describe {region}/{name}")
            if cluster is None:
                # Deleted between list and describe.
                continue
            if tag_key and tag_key not in cluster.tags:
                logger.debug("ignoring unmanaged cluster %s/%s", region, name)
                continue

            groups = []
            for ng_name in self._call(lambda: client.list_node_groups(name), cancel, f"list node groups {name}"):
                ng = self._call(
                    lambda: client.describe_node_group(name, ng_name),
                    cancel,
                    f"describe node group {name}/{ng_name}",
                )
                if ng is not None:
                    groups.append(ng)

            profiles = []
            for fp_name in self._call(
                lambda: client.list_fargate_profiles(name), cancel, f"list fargate profiles {name}"
            ):
                fp = self._call(
                    lambda: client.describe_fargate_profile(name, fp_name),
                    cancel,
                    f"describe fargate profile {name}/{fp_name}",
                )
                if fp is not None:
                    profiles.append(fp)

            clusters.append(
                replace(
                    cluster,
                    region=region,
                    node_groups=tuple(sorted(groups, key=lambda ng: ng.name)),
                    fargate_profiles=tuple(sorted(profiles, key=lambda fp: fp.name)),
                )
            )

        return tuple(sorted(clusters, key=lambda c: c.name))
