"""
Reconciler.

Executes a region's operations strictly in plan order against one control
plane client.

Apply semantics
Every apply re-reads the target first, which makes it idempotent:
create is create if absent, an existing target that differs is updated
update is update if differs, a missing target is a non retryable failure
  except for Fargate profiles, whose update is a replace that may have
  stopped between the delete and the create, so a missing profile is created
delete is delete if present, an absent target is skipped

A retried operation after a partial failure is therefore safe.

Failure scope
A failed operation aborts the remaining operations of its cluster only.
Later operations for that cluster are reported failed with the aborting
cause, and operations for other clusters carry on.

Cancellation
Once the cancel event is set no new operation is issued. The in flight
operation finishes its current attempt and stops retrying.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from topology_reconciler.core.errors import ApplyError, ReconcilerError
from topology_reconciler.core.events import EventSink
from topology_reconciler.core.retry import RetryCancelled, RetryPolicy, call_with_retry
from topology_reconciler.core.serialization import result_to_json
from topology_reconciler.core.types import (
    Cluster,
    Entity,
    EntityKind,
    FargateProfile,
    NodeGroup,
    Operation,
    OperationKind,
    OperationResult,
    ResultStatus,
)
from topology_reconciler.execution.base import ControlPlaneClient
from topology_reconciler.planner.diff import entity_changes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcilerConfig:
    """
    Reconciler configuration.

    retry
    Backoff policy for retryable apply failures.
    """

    retry: RetryPolicy = field(default_factory=RetryPolicy)


class Reconciler:
    """Apply operations for one region."""

    def __init__(
        self,
        client: ControlPlaneClient,
        config: ReconcilerConfig | None = None,
        events: EventSink | None = None,
    ) -> None:
        self._client = client
        self._config = config or ReconcilerConfig()
        self._events = events

    def run(self, operations: list[Operation], cancel: threading.Event | None = None) -> list[OperationResult]:
        """Apply operations in order and return one result per operation."""
        results: list[OperationResult] = []
        aborted: dict[str, str] = {}

        for op in operations:
            if cancel is not None and cancel.is_set():
                result = OperationResult(op, ResultStatus.failed, reason="cancelled before apply")
            elif op.cluster in aborted:
                result = OperationResult(op, ResultStatus.failed, reason=aborted[op.cluster])
            else:
                result = self.apply(op, cancel)
                if not result.ok:
                    aborted[op.cluster] = f"not attempted: {op} failed earlier: {result.reason}"

            self._record(result)
            results.append(result)

        return results

    def apply(self, op: Operation, cancel: threading.Event | None = None) -> OperationResult:
        """Apply one operation with retry. Failures become a failed result."""
        try:
            (status, reason), attempts = call_with_retry(
                lambda: self._apply_once(op),
                self._config.retry,
                cancel=cancel,
                describe=f"{op} {op.target_id}",
            )
        except RetryCancelled as exc:
            return OperationResult(
                op,
                ResultStatus.failed,
                reason=f"cancelled during retry, last error {type(exc.last_error).__name__}: {exc.last_error}",
                attempts=exc.attempts,
            )
        except ReconcilerError as exc:
            return OperationResult(
                op,
                ResultStatus.failed,
                reason=f"{type(exc).__name__}: {exc}",
                attempts=int(getattr(exc, "attempts", 1)),
            )
        except Exception as exc:
            logger.exception("unexpected error applying %s %s", op, op.target_id)
            return OperationResult(
                op,
                ResultStatus.failed,
                reason=f"unexpected {type(exc).__name__}: {exc}",
                attempts=int(getattr(exc, "attempts", 1)),
            )

        return OperationResult(op, status, reason=reason, attempts=attempts)

    def _record(self, result: OperationResult) -> None:
        op = result.operation
        if result.ok:
            logger.info("%s %s %s: %s", result.status.value, op, op.target_id, result.reason)
        else:
            logger.error("failed %s %s: %s", op, op.target_id, result.reason)

        if self._events is not None:
            event = result_to_json(result)
            event["type"] = "operation_result"
            event["region"] = op.region
            self._events.emit(event)

    def _describe(self, op: Operation) -> Entity | None:
        if op.entity == EntityKind.cluster:
            return self._client.describe_cluster(op.cluster)
        if op.entity == EntityKind.node_group:
            return self._client.describe_node_group(op.cluster, op.name)
        return self._client.describe_fargate_profile(op.cluster, op.name)

    def _apply_once(self, op: Operation) -> tuple[ResultStatus, str]:
        current = self._describe(op)

        if op.kind == OperationKind.delete:
            if current is None:
                return ResultStatus.skipped, "already absent"
            self._delete(op)
            return ResultStatus.applied, "deleted"

        desired = op.desired
        if desired is None:
            raise ApplyError(f"{op} has no desired state")

        if current is None:
            if op.kind == OperationKind.update and not isinstance(desired, FargateProfile):
                raise ApplyError(f"update target {op.target_id} not found")
            self._create(op, desired)
            return ResultStatus.applied, "created" if op.kind == OperationKind.create else "recreated"

        changes = entity_changes(desired, current)
        if not changes:
            return ResultStatus.skipped, "already matches desired"

        self._update(op, desired, changes)
        return ResultStatus.applied, f"updated {', '.join(changes)}"

    def _create(self, op: Operation, desired: Entity) -> None:
        if isinstance(desired, Cluster):
            self._client.create_cluster(desired)
        elif isinstance(desired, NodeGroup):
            self._client.create_node_group(op.cluster, desired)
        elif isinstance(desired, FargateProfile):
            self._client.create_fargate_profile(op.cluster, desired)

    def _update(self, op: Operation, desired: Entity, changes: tuple[str, ...]) -> None:
        if isinstance(desired, Cluster):
            self._client.update_cluster(desired, changes)
        elif isinstance(desired, NodeGroup):
            self._client.update_node_group(op.cluster, desired, changes)
        elif isinstance(desired, FargateProfile):
            self._client.update_fargate_profile(op.cluster, desired, changes)

    def _delete(self, op: Operation) -> None:
        if op.entity == EntityKind.cluster:
            self._client.delete_cluster(op.cluster)
        elif op.entity == EntityKind.node_group:
            self._client.delete_node_group(op.cluster, op.name)
        else:
            self._client.delete_fargate_profile(op.cluster, op.name)
