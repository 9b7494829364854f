"""Control loop: schedules reconcile passes for every fleet.

Each fleet spec found in the specs directory is reconciled on its own
schedule. A pass is a synchronous unit of work (reconcile_fleet) run in the
default executor, so passes for different fleets run concurrently on worker
threads. Passes for the same fleet are serialized by a per-fleet lock.

SCHEDULING:
The next pass of a fleet is due after the delay its last pass suggested:

- operation still running: OPERATION_POLL_INTERVAL
- conflict: CONFLICT_RETRY_INTERVAL
- other transient failure: the error's own suggestion
- terminal failure: never, until the spec file changes
- fleet still converging (needs requeue): OPERATION_POLL_INTERVAL
- settled: RECONCILE_INTERVAL

DEADLINES:
A pass that exceeds PASS_TIMEOUT is asked to stop at its next safe point
(before the next Azure step). Checkpoints are only written after Azure
accepted a call, so stopping early never leaves a corrupt checkpoint. The
fleet lock is held until the worker thread is really done.

The fleet status is persisted exactly once per pass, at the end.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.mgmt.compute import ComputeManagementClient

from .client import AzureScaleSetClient
from .collaborators import DefaultImageResolver, FileBootstrapDataSource
from .config import Config
from .errors import (
    OperationNotDoneError,
    ResourceConflictError,
    SpecValidationError,
    TransientError,
    is_terminal,
    requeue_after,
)
from .models import FleetSpec
from .scalesets import ScaleSetService
from .scope import FleetScope
from .security import get_managed_identity_credential
from .skus import ResourceSkuCache
from .spec_loader import SpecLoadError, load_fleet_specs
from .status import INVALID_CONFIGURATION
from .store import FileStateStore, RecordStore, StatusStore
from .synchronizer import InstanceSynchronizer, SyncResult

logger = logging.getLogger(__name__)

MIN_WAIT_SECONDS = 1.0


class PassCancelledError(TransientError):
    """The pass hit its deadline and stopped at a safe point."""

    pass


@dataclass
class ReconcileResult:
    """Result of a single pass for one fleet."""

    fleet: str
    action: str = "reconcile"
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    sync: SyncResult | None = None
    requeue_after: float | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded."""
        return self.error is None


class FleetReconciler:
    """Runs reconcile passes for all fleets until shutdown."""

    def __init__(
        self,
        config: Config,
        service: ScaleSetService,
        synchronizer: InstanceSynchronizer,
        records: RecordStore,
        statuses: StatusStore,
        spec_source: Callable[[], list[FleetSpec]] | None = None,
    ) -> None:
        self._config = config
        self._service = service
        self._synchronizer = synchronizer
        self._records = records
        self._statuses = statuses
        self._spec_source = spec_source or (lambda: load_fleet_specs(config.specs_dir))

        self._shutdown_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(config.max_concurrent_passes)
        self._locks: dict[str, asyncio.Lock] = {}
        self._due: dict[str, float] = {}
        self._last_specs: dict[str, FleetSpec] = {}

    @classmethod
    def from_config(cls, config: Config) -> FleetReconciler:
        """Wire the reconciler against Azure and the file state store.

        Raises:
            SecretlessViolationError: If credential secrets are present.
            StoreError: If the state directory cannot be created.
        """
        credential = get_managed_identity_credential(config.client_id)
        compute = ComputeManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )
        store = FileStateStore(config.state_dir)
        client = AzureScaleSetClient(credential, config.subscription_id, compute_client=compute)
        service = ScaleSetService(
            client,
            ResourceSkuCache(
                compute, config.location, max_age_seconds=config.sku_refresh_interval_seconds
            ),
            DefaultImageResolver(compute),
            FileBootstrapDataSource(config.bootstrap_secrets_dir),
            subscription_id=config.subscription_id,
            cluster_tags=config.cluster_tags,
        )
        return cls(config, service, InstanceSynchronizer(store, client), store, store)

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    # =========================================================================
    # Loop
    # =========================================================================

    async def run(self) -> None:
        """Run passes until shutdown is requested."""
        logger.info(
            "Starting fleet reconciler",
            extra={
                "specs_dir": str(self._config.specs_dir),
                "location": self._config.location,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent_passes": self._config.max_concurrent_passes,
            },
        )

        while not self._shutdown_event.is_set():
            await self.run_once()

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._seconds_until_next_due(),
                )
            except TimeoutError:
                # Normal timeout, continue to next cycle
                pass

        logger.info("Fleet reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def run_once(self) -> list[ReconcileResult]:
        """Reload specs and run a pass for every fleet that is due."""
        try:
            specs = self._spec_source()
        except SpecLoadError as e:
            logger.error("Failed to load fleet specs", extra={"error": str(e)})
            return []

        now = time.monotonic()
        due: list[FleetSpec] = []
        for spec in specs:
            if self._last_specs.get(spec.name) != spec:
                # New or edited spec: reconcile right away
                self._last_specs[spec.name] = spec
                self._due[spec.name] = now
            if self._due.get(spec.name, now) <= now:
                due.append(spec)

        current = {spec.name for spec in specs}
        for name in list(self._last_specs):
            if name not in current:
                logger.info("Fleet spec removed, no longer reconciling", extra={"fleet": name})
                del self._last_specs[name]
                self._due.pop(name, None)
                self._locks.pop(name, None)

        return list(await asyncio.gather(*(self.reconcile(spec) for spec in due)))

    async def reconcile(self, spec: FleetSpec) -> ReconcileResult:
        """Run one pass for a fleet, serialized with other passes of it."""
        lock = self._locks.setdefault(spec.name, asyncio.Lock())
        cancel = threading.Event()

        async with lock, self._semaphore:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(None, self.reconcile_fleet, spec, cancel)
            try:
                result = await asyncio.wait_for(
                    asyncio.shield(future),
                    timeout=self._config.pass_timeout_seconds,
                )
            except TimeoutError:
                logger.error(
                    "Pass exceeded deadline, stopping at next safe point",
                    extra={"fleet": spec.name, "timeout_seconds": self._config.pass_timeout_seconds},
                )
                cancel.set()
                result = await future

        self._schedule(result)
        self._log_result(result)
        return result

    def _schedule(self, result: ReconcileResult) -> None:
        if result.requeue_after is None:
            self._due[result.fleet] = math.inf
        else:
            self._due[result.fleet] = time.monotonic() + result.requeue_after

    def _seconds_until_next_due(self) -> float:
        interval = float(self._config.reconcile_interval_seconds)
        if not self._due:
            return interval
        wait = min(self._due.values()) - time.monotonic()
        return max(MIN_WAIT_SECONDS, min(wait, interval))

    # =========================================================================
    # Pass
    # =========================================================================

    def reconcile_fleet(
        self, spec: FleetSpec, cancel: threading.Event | None = None
    ) -> ReconcileResult:
        """Run one synchronous pass for a fleet and persist its status."""
        scope = FleetScope(spec, self._statuses.load_status(spec.name))
        result = ReconcileResult(fleet=spec.name)

        try:
            _check_cancelled(cancel, spec.name)
            if scope.deletion_requested:
                result.action = "delete"
                self._delete(scope)
            else:
                self._reconcile(scope)
        except Exception as e:
            result.error = e
            if is_terminal(e):
                scope.set_failure(INVALID_CONFIGURATION, str(e))
        finally:
            self._close(scope, result, cancel)

        result.requeue_after = self._requeue_after(scope, result.error)
        result.end_time = datetime.now(UTC)
        return result

    def _reconcile(self, scope: FleetScope) -> None:
        spec = scope.spec
        if spec.location.lower() != self._config.location.lower():
            raise SpecValidationError(
                f"fleet location {spec.location} does not match operator location "
                f"{self._config.location}"
            )
        self._service.reconcile(scope)
        scope.clear_failure()

    def _delete(self, scope: FleetScope) -> None:
        if scope.status.deleted:
            return
        self._service.delete(scope)
        removed = self._synchronizer.remove_all(scope)
        scope.mark_deleted()
        logger.info("Fleet deleted", extra={"fleet": scope.name, "records_removed": removed})

    def _close(
        self, scope: FleetScope, result: ReconcileResult, cancel: threading.Event | None
    ) -> None:
        """Sync records, derive counters and persist the status."""
        if not scope.deletion_requested:
            try:
                _check_cancelled(cancel, scope.name)
                self._synchronizer.refresh_records(scope)
                result.sync = self._synchronizer.apply(scope)
                self._synchronizer.finalize(scope)
            except Exception as e:
                _record_error(result, e, "Tracking record synchronization failed")

        try:
            scope.update_replicas_and_provider_ids(self._records.list(scope.labels))
            scope.set_provisioning_state_and_conditions()
            self._statuses.save_status(scope.close())
        except Exception as e:
            _record_error(result, e, "Failed to persist fleet status")

    def _requeue_after(self, scope: FleetScope, err: Exception | None) -> float | None:
        if err is not None:
            if is_terminal(err):
                return None
            if isinstance(err, OperationNotDoneError):
                return float(self._config.operation_poll_interval_seconds)
            if isinstance(err, ResourceConflictError):
                return float(self._config.conflict_retry_interval_seconds)
            return requeue_after(err)
        if scope.status.deleted:
            return None
        if scope.needs_requeue():
            return float(self._config.operation_poll_interval_seconds)
        return float(self._config.reconcile_interval_seconds)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log pass result with structured data."""
        extra: dict[str, Any] = {
            "fleet": result.fleet,
            "action": result.action,
            "duration_seconds": result.duration_seconds,
            "requeue_after": result.requeue_after,
        }
        if result.sync is not None:
            extra["records_created"] = len(result.sync.created)
            extra["records_deleted"] = len(result.sync.removed_vanished) + len(
                result.sync.removed_selected
            )

        if result.error is None:
            logger.info("Pass result", extra=extra)
            return

        extra["error"] = str(result.error)
        extra["error_type"] = type(result.error).__name__
        if is_terminal(result.error):
            logger.error("Pass failed permanently, waiting for a spec change", extra=extra)
        elif isinstance(result.error, OperationNotDoneError):
            logger.info("Pass waiting for Azure operation", extra=extra)
        else:
            logger.warning("Pass failed, will retry", extra=extra)


def _check_cancelled(cancel: threading.Event | None, fleet: str) -> None:
    if cancel is not None and cancel.is_set():
        raise PassCancelledError(f"pass for fleet {fleet} cancelled after deadline")


def _record_error(result: ReconcileResult, err: Exception, message: str) -> None:
    """Keep the first error of a pass; log later ones."""
    if result.error is None:
        result.error = err
    else:
        logger.error(message, extra={"fleet": result.fleet, "error": str(err)})
