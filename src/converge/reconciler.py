"""Reconciler: one plan/apply/destroy run, and the continuous watch loop.

A run:
1. Loads the definitions, builds the graph and resolves the order. Parse,
   duplicate, reference, cycle and unknown-type errors abort here, before
   the lock is taken or any provider is called.
2. Acquires the state lock (fails fast or waits ``lock_timeout_seconds``).
3. Optionally refreshes the snapshot from the providers: records whose
   object is gone are dropped, outputs are re-read.
4. Diffs desired state against the snapshot.
5. Executes the plan (apply/destroy), then releases the lock.

EXIT CODES:
- 0: success (or nothing to do)
- 1: one or more actions failed, or an unexpected error
- 2: invalid input or configuration
- 3: the state lock is held by another run
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .address import AddressError
from .azure_provider import AzureResourceProvider
from .config import Config, ConfigurationError
from .dependency import CycleError, resolve_order
from .diff import DiffEngine, Plan
from .executor import ExecutionEngine, RunReport
from .expressions import UnresolvedReferenceError
from .graph import DuplicateAddressError, ResourceGraph, build_graph
from .provider import ProviderError, ProviderRegistry, UnknownResourceTypeError
from .retry import RetryExhaustedError, RetryPolicy
from .security import SecretlessViolationError, get_credential
from .spec_loader import ParseError, load_definitions
from .state import LockHeldError, StateError, StateSnapshot, StateStore

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_ACTIONS_FAILED = 1
EXIT_INVALID_INPUT = 2
EXIT_LOCK_HELD = 3

# Circuit breaker for the watch loop
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300


class ChangeLimitExceededError(Exception):
    """Raised when a plan has more changes than ``max_changes_per_run``."""

    def __init__(self, changes: int, limit: int) -> None:
        self.changes = changes
        self.limit = limit
        super().__init__(
            f"Plan has {changes} changes, exceeding MAX_CHANGES_PER_RUN={limit}. "
            f"Raise the limit or split the change."
        )


INVALID_INPUT_ERRORS: tuple[type[Exception], ...] = (
    AddressError,
    ChangeLimitExceededError,
    ConfigurationError,
    CycleError,
    DuplicateAddressError,
    ParseError,
    SecretlessViolationError,
    UnknownResourceTypeError,
    UnresolvedReferenceError,
)

# Errors reported without a traceback
EXPECTED_ERRORS: tuple[type[Exception], ...] = (
    *INVALID_INPUT_ERRORS,
    ProviderError,
    RetryExhaustedError,
    StateError,
)


@dataclass
class ReconcileResult:
    """Result of a single run."""

    operation: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: Plan | None = None
    report: RunReport | None = None
    refreshed: int = 0
    dropped: int = 0
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            if isinstance(self.error, LockHeldError):
                return EXIT_LOCK_HELD
            if isinstance(self.error, INVALID_INPUT_ERRORS):
                return EXIT_INVALID_INPUT
            return EXIT_ACTIONS_FAILED
        if self.report is not None:
            return self.report.exit_code
        return EXIT_SUCCESS

    @property
    def success(self) -> bool:
        """Check if the run succeeded."""
        return self.exit_code == EXIT_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "operation": self.operation,
            "exit_code": self.exit_code,
            "duration_seconds": self.duration_seconds,
        }
        if self.plan is not None:
            result["plan"] = self.plan.to_dict()
        if self.report is not None:
            result["report"] = self.report.to_dict()
        if self.error is not None:
            result["error"] = f"{type(self.error).__name__}: {self.error}"
        return result


def build_default_registry(config: Config) -> ProviderRegistry:
    """Registry with the Azure provider for the configured subscription.

    Raises:
        ConfigurationError: If no subscription is configured.
        SecretlessViolationError: If credential secrets are set in
            managedIdentity mode.
    """
    if not config.subscription_id:
        raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required")
    credential = get_credential(config.credential_mode, config.client_id)
    provider = AzureResourceProvider(
        subscription_id=config.subscription_id,
        credential=credential,
        operation_timeout_seconds=config.operation_timeout_seconds,
    )
    return ProviderRegistry([provider])


class Reconciler:
    """Drives plan, apply and destroy runs against one state file.

    The provider registry is created on first use so that commands that
    only touch the state file need no credentials.
    """

    def __init__(
        self,
        config: Config,
        registry: ProviderRegistry | None = None,
        store: StateStore | None = None,
    ) -> None:
        """Initialize reconciler with configuration.

        Args:
            config: Validated configuration.
            registry: Providers by resource type (default: Azure).
            store: State store (default: file at ``config.state_path``).
        """
        self._config = config
        self._registry = registry
        self._store = store or StateStore(config.state_path)
        self._retry = RetryPolicy.from_config(config)
        self._engine: ExecutionEngine | None = None

        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = build_default_registry(self._config)
        return self._registry

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def validate(self) -> tuple[ResourceGraph, list]:
        """Load definitions, build the graph and resolve the order.

        Returns:
            The desired graph and its topological order.

        Raises:
            ParseError, DuplicateAddressError, UnresolvedReferenceError,
            CycleError, UnknownResourceTypeError: On invalid definitions.
        """
        definitions = load_definitions(self._config.definitions_path)
        graph = build_graph(definitions)
        order = resolve_order(graph)
        self.registry.validate_types({a.type for a in graph.nodes})
        logger.info(
            "Definitions valid",
            extra={
                "path": str(self._config.definitions_path),
                "files": len(definitions.sources),
                "nodes": len(graph),
            },
        )
        return graph, order

    async def plan(self, destroy: bool = False, refresh: bool = False) -> ReconcileResult:
        """Compute a plan without applying it. The state file is not modified."""
        return await self._run("plan", destroy=destroy, refresh=refresh, execute=False)

    async def apply(self, refresh: bool = False, dry_run: bool | None = None) -> ReconcileResult:
        """Converge the real world to the definitions."""
        return await self._run("apply", refresh=refresh, dry_run=dry_run)

    async def destroy(self, dry_run: bool | None = None) -> ReconcileResult:
        """Delete every resource recorded in the state, dependents first."""
        return await self._run("destroy", destroy=True, dry_run=dry_run)

    async def refresh(self) -> ReconcileResult:
        """Update the state from the providers without planning."""
        result = ReconcileResult(operation="refresh")
        try:
            await self._acquire_lock("refresh")
            try:
                await self._refresh(self._store.read(), persist=True, result=result)
            finally:
                self._store.release_lock()
        except Exception as e:
            self._record_error(result, e)
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def cancel(self) -> None:
        """Stop launching actions in the current run; in-flight ones finish."""
        if self._engine is not None:
            self._engine.cancel()

    async def _run(
        self,
        operation: str,
        destroy: bool = False,
        refresh: bool = False,
        execute: bool = True,
        dry_run: bool | None = None,
    ) -> ReconcileResult:
        dry_run = self._config.dry_run if dry_run is None else dry_run
        result = ReconcileResult(operation=operation)

        try:
            graph, order = (None, []) if destroy else self.validate()

            await self._acquire_lock(operation)
            try:
                snapshot = self._store.read()
                if refresh:
                    snapshot = await self._refresh(
                        snapshot, persist=execute and not dry_run, result=result
                    )

                diff = DiffEngine(self.registry)
                if graph is None:
                    plan = diff.plan_destroy(snapshot)
                else:
                    plan = diff.plan(graph, order, snapshot)
                result.plan = plan

                if execute:
                    if not dry_run:
                        self._check_change_limit(plan)
                    result.report = await self._execute(plan, dry_run)
            finally:
                self._store.release_lock()
        except Exception as e:
            self._record_error(result, e)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _execute(self, plan: Plan, dry_run: bool) -> RunReport:
        engine = ExecutionEngine(
            registry=self.registry,
            store=self._store,
            retry_policy=self._retry,
            max_concurrency=self._config.max_concurrency,
            dry_run=dry_run,
        )
        self._engine = engine
        if self._shutdown_event.is_set():
            engine.cancel()
        try:
            return await engine.execute(plan)
        finally:
            self._engine = None

    async def _acquire_lock(self, operation: str) -> None:
        await self._store.acquire_lock_async(
            timeout=self._config.lock_timeout_seconds, operation=operation
        )

    def _check_change_limit(self, plan: Plan) -> None:
        changes = len(plan.changes)
        if changes > self._config.max_changes_per_run:
            logger.error(
                "Plan exceeds change limit",
                extra={"changes": changes, "limit": self._config.max_changes_per_run},
            )
            raise ChangeLimitExceededError(changes, self._config.max_changes_per_run)

    async def _refresh(
        self, snapshot: StateSnapshot, persist: bool, result: ReconcileResult
    ) -> StateSnapshot:
        """Re-read every recorded object from its provider.

        Args:
            snapshot: Snapshot to refresh; not modified.
            persist: Write changes to the state store (lock must be held).
            result: Receives the refreshed/dropped counts.

        Returns:
            The refreshed snapshot.
        """
        refreshed = snapshot.model_copy(deep=True)
        self.registry.validate_types({r.type for r in refreshed.resources.values()})

        for address in refreshed.addresses:
            record = refreshed.resources[address]
            if record.provider_id is None:
                continue
            provider = self.registry.provider_for(record.type)
            current = await self._retry.run(
                functools.partial(provider.read, record.type, record.provider_id),
                describe=f"read {address}",
            )

            if current is None:
                logger.warning(
                    "Recorded resource no longer exists, dropping it from state",
                    extra={"address": address, "provider_id": record.provider_id},
                )
                del refreshed.resources[address]
                if persist:
                    self._store.delete(address)
                result.dropped += 1
                continue

            if current.outputs != record.outputs:
                record.outputs = dict(current.outputs)
                if persist:
                    self._store.upsert(record)
                result.refreshed += 1

        logger.info(
            "State refreshed",
            extra={
                "records": len(snapshot),
                "refreshed": result.refreshed,
                "dropped": result.dropped,
                "persisted": persist,
            },
        )
        return refreshed

    # -------------------------------------------------------------------------
    # Watch loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Apply at the configured interval until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "definitions_path": str(self._config.definitions_path),
                "state_path": str(self._config.state_path),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait_for_shutdown(
                        min(remaining, self._config.reconcile_interval_seconds)
                    )
                    continue

                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.apply(refresh=True)

            # Update circuit breaker state
            if not result.success:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            await self._wait_for_shutdown(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            pass

    def shutdown(self) -> None:
        """Signal the reconciler to stop after in-flight operations finish."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self.cancel()

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    @staticmethod
    def _record_error(result: ReconcileResult, error: Exception) -> None:
        result.error = error
        if not isinstance(error, EXPECTED_ERRORS):
            logger.exception(
                "Run failed unexpectedly",
                extra={"operation": result.operation, "error_type": type(error).__name__},
            )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "operation": result.operation,
            "duration_seconds": result.duration_seconds,
            "exit_code": result.exit_code,
        }
        if result.plan is not None:
            extra["plan"] = result.plan.summary()
        if result.report is not None:
            extra["results"] = result.report.counts()
            extra["dry_run"] = result.report.dry_run

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        elif result.report is not None and not result.report.success:
            for failure in result.report.failures:
                logger.error(
                    "Action did not complete",
                    extra={
                        "key": failure.key,
                        "status": failure.status.value,
                        "detail": failure.describe_error(),
                    },
                )
            logger.warning("Reconciliation finished with failures", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
