"""Execution engine: applies a plan against the providers.

SCHEDULING:
- Actions start once every action they require has succeeded
- Independent actions run concurrently as asyncio tasks, at most
  ``max_concurrency`` at a time
- A permanent failure taints the node and blocks its transitive
  dependents; independent branches keep going
- The state record of a node is written before any dependent starts

CANCELLATION:
``cancel()`` (or cancelling the task running ``execute``) stops launching
new actions. Provider operations already in flight are allowed to finish
and their results are persisted, so the next run resumes from a
consistent snapshot. Everything not started is reported ``cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .address import ResourceAddress
from .dependency import DependencyGraph
from .diff import (
    ActionType,
    Plan,
    PlannedAction,
    merge_ignored,
    record_value,
    resolve_reference,
)
from .expressions import Reference, UnresolvedReferenceError, contains_unknown, resolve_value
from .graph import LifecycleState, ResourceGraph, ResourceNode
from .models import ReplaceStrategy
from .provider import PermanentProviderError, ProviderRegistry, ProviderResult
from .retry import RetryExhaustedError, RetryPolicy
from .state import RecordState, ResourceRecord, StateSnapshot, StateStore

logger = logging.getLogger(__name__)

AttemptCounter = Callable[[int], None]


def _graph_of(plan: Plan) -> ResourceGraph:
    if plan.graph is None:
        raise ValueError("Plan has no desired graph to resolve references against")
    return plan.graph


def _node_of(action: PlannedAction) -> ResourceNode:
    if action.node is None:
        raise ValueError(f"{action.key}: {action.action.value} action has no desired node")
    return action.node


class ActionStatus(str, Enum):
    """Outcome of one plan action."""

    SUCCEEDED = "succeeded"
    NO_OP = "no-op"
    PLANNED = "planned"  # Dry run
    TAINTED = "tainted"  # Failed permanently
    BLOCKED = "blocked"  # A required action failed
    CANCELLED = "cancelled"  # Run cancelled before the action started

    @property
    def ok(self) -> bool:
        return self in (ActionStatus.SUCCEEDED, ActionStatus.NO_OP, ActionStatus.PLANNED)


@dataclass
class ActionResult:
    """Result of one plan action."""

    key: str
    address: ResourceAddress
    action: ActionType
    status: ActionStatus
    attempts: int = 0
    error: str | None = None
    provider_id: str | None = None
    blocked_by: str | None = None
    duration_seconds: float = 0.0

    def describe_error(self) -> str:
        """Address, action attempted and provider message in one line."""
        if self.status == ActionStatus.BLOCKED:
            return f"{self.key}: {self.action.value} blocked by failed {self.blocked_by}"
        return f"{self.key}: {self.action.value} failed: {self.error}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "key": self.key,
            "address": str(self.address),
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.error:
            result["error"] = self.error
        if self.blocked_by:
            result["blocked_by"] = self.blocked_by
        if self.provider_id:
            result["provider_id"] = self.provider_id
        return result


@dataclass
class RunReport:
    """Per-action results of one execution, in plan order."""

    results: list[ActionResult] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False

    def get(self, key: str) -> ActionResult | None:
        for result in self.results:
            if result.key == key:
                return result
        return None

    def status_of(self, key: str) -> ActionStatus | None:
        result = self.get(key)
        return result.status if result else None

    @property
    def failures(self) -> list[ActionResult]:
        return [r for r in self.results if not r.status.ok]

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        """0 when every action succeeded (or was a no-op), 1 otherwise."""
        return 0 if self.success else 1

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ActionStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "counts": self.counts(),
            "results": [r.to_dict() for r in self.results],
        }


class _ActionFailed(Exception):
    """Internal: an action failed permanently."""

    pass


class ExecutionEngine:
    """Walks a plan in dependency order and invokes providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = 4,
        dry_run: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Providers by resource type.
            store: State store; its lock must be held while executing.
            retry_policy: Retry schedule for transient provider errors.
            max_concurrency: Maximum number of actions in flight.
            dry_run: Report the plan as planned without provider calls.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._registry = registry
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._max_concurrency = max_concurrency
        self._dry_run = dry_run
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Stop launching new actions. In-flight actions finish."""
        if not self._cancel_event.is_set():
            logger.warning("Execution cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(self, plan: Plan) -> RunReport:
        """Apply a plan.

        Returns:
            Per-action report. Failed actions never raise.

        Raises:
            StateError: If the state store cannot be written. In-flight
                actions are awaited first.
            asyncio.CancelledError: If the surrounding task is cancelled,
                after in-flight actions have finished.
        """
        if self._dry_run:
            return self._dry_run_report(plan)

        actions = {a.key: a for a in plan.actions}
        ordering = DependencyGraph()
        for action in plan.actions:
            ordering.add_node(action.key, [k for k in action.requires if k in actions])

        results: dict[str, ActionResult] = {}
        succeeded: set[str] = set()
        running: dict[asyncio.Task[ActionResult], str] = {}
        fatal: BaseException | None = None
        outer_cancelled = False

        logger.info(
            "Executing plan",
            extra={"actions": len(plan.actions), "max_concurrency": self._max_concurrency},
        )

        while True:
            if not self.cancelled and fatal is None:
                self._launch_ready(plan, actions, ordering, results, succeeded, running)

            if not running:
                break

            try:
                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                # Let in-flight provider operations finish and persist
                outer_cancelled = True
                self.cancel()
                await asyncio.gather(*running.keys(), return_exceptions=True)
                done = set(running.keys())

            for task in done:
                key = running.pop(task)
                try:
                    result = task.result()
                except Exception as e:
                    logger.exception("Action aborted", extra={"key": key})
                    fatal = fatal or e
                    result = ActionResult(
                        key=key,
                        address=actions[key].address,
                        action=actions[key].action,
                        status=ActionStatus.TAINTED,
                        error=f"{type(e).__name__}: {e}",
                    )
                results[key] = result
                if result.status == ActionStatus.SUCCEEDED:
                    succeeded.add(key)
                else:
                    self._block_dependents(key, ordering, actions, results)

        for action in plan.actions:
            if action.key not in results:
                if self.cancelled or fatal is not None:
                    status = ActionStatus.CANCELLED
                else:
                    status = ActionStatus.BLOCKED
                results[action.key] = ActionResult(
                    key=action.key, address=action.address, action=action.action, status=status
                )

        report = RunReport(
            results=[results[a.key] for a in plan.actions],
            cancelled=self.cancelled,
        )
        logger.info("Plan execution finished", extra={"counts": report.counts()})

        if outer_cancelled:
            raise asyncio.CancelledError()
        if fatal is not None:
            raise fatal
        return report

    def _dry_run_report(self, plan: Plan) -> RunReport:
        results = [
            ActionResult(
                key=a.key,
                address=a.address,
                action=a.action,
                status=ActionStatus.PLANNED if a.is_change else ActionStatus.NO_OP,
            )
            for a in plan.actions
        ]
        logger.info("Dry run, no provider operations invoked", extra={"summary": plan.summary()})
        return RunReport(results=results, dry_run=True)

    def _launch_ready(
        self,
        plan: Plan,
        actions: dict[str, PlannedAction],
        ordering: DependencyGraph,
        results: dict[str, ActionResult],
        succeeded: set[str],
        running: dict[asyncio.Task[ActionResult], str],
    ) -> None:
        """Start ready actions up to the concurrency limit.

        No-op actions complete immediately, which may make more actions
        ready, so this loops until nothing new can start.
        """
        progressed = True
        while progressed:
            progressed = False
            in_flight = set(running.values())
            for key in ordering.get_ready(succeeded, exclude=set(results) | in_flight):
                action = actions[key]
                if action.action == ActionType.NO_OP:
                    results[key] = ActionResult(
                        key=key,
                        address=action.address,
                        action=action.action,
                        status=ActionStatus.NO_OP,
                    )
                    succeeded.add(key)
                    progressed = True
                    continue
                if len(running) >= self._max_concurrency:
                    return
                task = asyncio.create_task(self._run_action(plan, action), name=key)
                running[task] = key

    def _block_dependents(
        self,
        failed_key: str,
        ordering: DependencyGraph,
        actions: dict[str, PlannedAction],
        results: dict[str, ActionResult],
    ) -> None:
        for key in sorted(ordering.transitive_dependents(failed_key)):
            if key in results:
                continue
            action = actions[key]
            results[key] = ActionResult(
                key=key,
                address=action.address,
                action=action.action,
                status=ActionStatus.BLOCKED,
                blocked_by=failed_key,
            )
            logger.warning(
                "Action blocked by failed dependency",
                extra={"key": key, "blocked_by": failed_key},
            )

    # -------------------------------------------------------------------------
    # Single action
    # -------------------------------------------------------------------------

    async def _run_action(self, plan: Plan, action: PlannedAction) -> ActionResult:
        started = time.monotonic()
        attempts = 0

        def count_attempt(_: int) -> None:
            nonlocal attempts
            attempts += 1

        result = ActionResult(
            key=action.key,
            address=action.address,
            action=action.action,
            status=ActionStatus.SUCCEEDED,
        )
        logger.info(
            "Starting action",
            extra={"key": action.key, "action": action.action.value, "type": action.resource_type},
        )

        try:
            if action.deposed:
                await self._delete_deposed(action, count_attempt)
            elif action.action == ActionType.DELETE:
                await self._delete(action, count_attempt)
            elif action.action == ActionType.CREATE:
                result.provider_id = await self._create(plan, action, count_attempt)
            elif action.action == ActionType.UPDATE:
                result.provider_id = await self._update(plan, action, count_attempt)
            elif action.action == ActionType.REPLACE:
                result.provider_id = await self._replace(plan, action, count_attempt)
        except _ActionFailed as e:
            result.status = ActionStatus.TAINTED
            result.error = str(e)
            self._mark_tainted(action)
            logger.error(
                "Action failed",
                extra={
                    "key": action.key,
                    "action": action.action.value,
                    "attempts": attempts,
                    "error": str(e),
                },
            )

        result.attempts = attempts
        result.duration_seconds = round(time.monotonic() - started, 3)
        if result.status == ActionStatus.SUCCEEDED:
            logger.info(
                "Action succeeded",
                extra={
                    "key": action.key,
                    "action": action.action.value,
                    "attempts": attempts,
                    "duration_seconds": result.duration_seconds,
                },
            )
        return result

    async def _call(
        self,
        describe: str,
        operation: Callable[[], Awaitable[Any]],
        count_attempt: AttemptCounter,
    ) -> Any:
        """Run one provider operation under the retry policy.

        Raises:
            _ActionFailed: On a permanent error, exhausted retries or any
                unexpected exception from the provider.
        """
        try:
            return await self._retry.run(operation, describe, on_attempt=count_attempt)
        except PermanentProviderError as e:
            raise _ActionFailed(str(e)) from e
        except RetryExhaustedError as e:
            raise _ActionFailed(str(e)) from e
        except Exception as e:
            logger.exception("Unexpected provider error", extra={"operation": describe})
            raise _ActionFailed(f"{type(e).__name__}: {e}") from e

    def _resolve_attributes(self, plan: Plan, action: PlannedAction) -> dict[str, Any]:
        """Evaluate deferred references against the applied state."""
        node = _node_of(action)
        graph = _graph_of(plan)
        snapshot = self._store.read()

        def value_of(address: ResourceAddress, reference: Reference) -> Any:
            record = snapshot.get(address)
            if record is None or record.tainted:
                raise UnresolvedReferenceError(
                    f"'{reference}' refers to {address}, which has not been applied",
                    reference=reference.expression,
                )
            return record_value(record, reference.path, reference.expression)

        try:
            attributes = resolve_value(
                node.attributes,
                lambda ref: resolve_reference(ref, graph, value_of),
            )
        except UnresolvedReferenceError as e:
            raise _ActionFailed(str(e)) from e
        if contains_unknown(attributes):
            raise _ActionFailed("attributes still contain unknown values")
        return attributes

    def _new_record(
        self,
        plan: Plan,
        action: PlannedAction,
        attributes: dict[str, Any],
        outcome: ProviderResult,
        deposed: list[str] | None = None,
    ) -> ResourceRecord:
        graph = _graph_of(plan)
        dependencies = sorted(str(d) for d in graph.dependencies_of(action.address))
        return ResourceRecord(
            address=str(action.address),
            type=action.resource_type,
            provider_id=outcome.provider_id,
            attributes=attributes,
            outputs=outcome.outputs,
            dependencies=dependencies,
            state=RecordState.CREATED,
            deposed=deposed or [],
        )

    def _set_node_state(
        self, action: PlannedAction, state: LifecycleState, provider_id: str | None = None
    ) -> None:
        if action.node is None:
            return
        action.node.state = state
        if provider_id is not None:
            action.node.provider_id = provider_id

    def _mark_tainted(self, action: PlannedAction) -> None:
        """Persist the taint on an existing record; failed creates leave none."""
        self._set_node_state(action, LifecycleState.TAINTED)
        if action.deposed:
            return
        record = self._store.read().get(action.address)
        if record is None or record.tainted:
            return
        record.state = RecordState.TAINTED
        self._store.upsert(record)

    async def _create(
        self, plan: Plan, action: PlannedAction, count_attempt: AttemptCounter
    ) -> str:
        provider = self._registry.provider_for(action.resource_type)
        attributes = self._resolve_attributes(plan, action)
        self._set_node_state(action, LifecycleState.CREATING)

        outcome = await self._call(
            f"create {action.key}",
            lambda: provider.create(action.resource_type, attributes),
            count_attempt,
        )
        self._store.upsert(self._new_record(plan, action, attributes, outcome))
        self._set_node_state(action, LifecycleState.CREATED, outcome.provider_id)
        return outcome.provider_id

    async def _update(
        self, plan: Plan, action: PlannedAction, count_attempt: AttemptCounter
    ) -> str:
        provider = self._registry.provider_for(action.resource_type)
        prior = self._require_record(action)
        attributes = self._resolve_attributes(plan, action)
        attributes = merge_ignored(
            attributes, prior.attributes, _node_of(action).lifecycle.ignore_changes
        )
        if prior.provider_id is None:
            raise _ActionFailed("record has no provider identifier to update")
        provider_id = prior.provider_id
        self._set_node_state(action, LifecycleState.UPDATING)

        outcome = await self._call(
            f"update {action.key}",
            lambda: provider.update(action.resource_type, provider_id, attributes),
            count_attempt,
        )
        # A successful update leaves the record in created state
        self._store.upsert(
            self._new_record(plan, action, attributes, outcome, deposed=prior.deposed)
        )
        self._set_node_state(action, LifecycleState.CREATED, outcome.provider_id)
        return outcome.provider_id

    async def _replace(
        self, plan: Plan, action: PlannedAction, count_attempt: AttemptCounter
    ) -> str:
        provider = self._registry.provider_for(action.resource_type)
        prior = self._require_record(action)
        attributes = self._resolve_attributes(plan, action)
        old_id = prior.provider_id

        if action.replace_strategy == ReplaceStrategy.CREATE_BEFORE_DELETE:
            self._set_node_state(action, LifecycleState.CREATING)
            outcome = await self._call(
                f"create replacement {action.key}",
                lambda: provider.create(action.resource_type, attributes),
                count_attempt,
            )
            deposed = list(prior.deposed)
            # Same identifier means the provider replaced in place
            if old_id is not None and old_id != outcome.provider_id and old_id not in deposed:
                deposed.append(old_id)
            self._store.upsert(
                self._new_record(plan, action, attributes, outcome, deposed=deposed)
            )
            self._set_node_state(action, LifecycleState.CREATED, outcome.provider_id)
            return outcome.provider_id

        # Delete before create
        if old_id is not None:
            self._set_node_state(action, LifecycleState.DELETING)
            await self._call(
                f"delete for replacement {action.key}",
                lambda: provider.delete(action.resource_type, old_id),
                count_attempt,
            )
            # Old object is gone: keep a tainted, id-less record until the
            # new object exists
            gone = prior.model_copy(deep=True)
            gone.provider_id = None
            gone.state = RecordState.TAINTED
            self._store.upsert(gone)
            self._set_node_state(action, LifecycleState.DELETED)

        self._set_node_state(action, LifecycleState.CREATING)
        outcome = await self._call(
            f"create {action.key}",
            lambda: provider.create(action.resource_type, attributes),
            count_attempt,
        )
        self._store.upsert(
            self._new_record(plan, action, attributes, outcome, deposed=prior.deposed)
        )
        self._set_node_state(action, LifecycleState.CREATED, outcome.provider_id)
        return outcome.provider_id

    async def _delete(self, action: PlannedAction, count_attempt: AttemptCounter) -> None:
        provider = self._registry.provider_for(action.resource_type)
        record = self._store.read().get(action.address)
        if record is None:
            return
        self._set_node_state(action, LifecycleState.DELETING)

        # Leftover deposed objects go first, each persisted as it goes
        for deposed_id in list(record.deposed):
            await self._call(
                f"delete deposed {action.key}",
                lambda deposed_id=deposed_id: provider.delete(action.resource_type, deposed_id),
                count_attempt,
            )
            record.deposed.remove(deposed_id)
            self._store.upsert(record)

        if record.provider_id is not None:
            provider_id = record.provider_id
            await self._call(
                f"delete {action.key}",
                lambda: provider.delete(action.resource_type, provider_id),
                count_attempt,
            )
        self._store.delete(action.address)
        self._set_node_state(action, LifecycleState.DELETED)

    async def _delete_deposed(self, action: PlannedAction, count_attempt: AttemptCounter) -> None:
        provider = self._registry.provider_for(action.resource_type)
        record = self._store.read().get(action.address)
        if record is None or not record.deposed:
            return

        for deposed_id in list(record.deposed):
            if deposed_id != record.provider_id:
                await self._call(
                    f"delete deposed {action.key}",
                    lambda deposed_id=deposed_id: provider.delete(
                        action.resource_type, deposed_id
                    ),
                    count_attempt,
                )
            record.deposed.remove(deposed_id)
            self._store.upsert(record)
            logger.info(
                "Deposed object deleted",
                extra={"address": str(action.address), "provider_id": deposed_id},
            )

    def _require_record(self, action: PlannedAction) -> ResourceRecord:
        snapshot: StateSnapshot = self._store.read()
        record = snapshot.get(action.address)
        if record is None:
            raise _ActionFailed(f"no state record for {action.address}")
        return record
