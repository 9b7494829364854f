"""Scale set service: drives one fleet's scale set towards its spec.

Each call to reconcile() or delete() is one short, non-blocking pass:

    validate ──► checkpoint? ──yes──► poll ──not done──► OperationNotDone
                     │                 │
                     no              done ──► publish
                     ▼
                   fetch ──not found──► build ──► create ──► checkpoint
                     │
                   found ──► diff ──patch needed──► update ──► checkpoint
                               │
                            in sync ──► publish

At most one mutating call is issued per pass. Once Azure accepts a mutation
its checkpoint is stored on the scope and polled once; an operation that has
not finished yet surfaces as OperationNotDoneError so the control loop comes
back later. The observed scale set is published to the scope on every path,
including failures, so status reflects the latest knowledge.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from .builder import ScaleSetBuilder
from .checkpoint import OperationCheckpoint, OperationKind
from .client import SCALESETS_SERVICE_NAME, ScaleSetClient
from .collaborators import BootstrapDataSource, ImageResolver
from .diff import compute_patch
from .errors import (
    OperationFailedError,
    OperationNotDoneError,
    is_resource_not_found,
    wrap_error,
)
from .scope import FleetScope
from .skus import CapabilityLookup, ResourceSku
from .status import BOOTSTRAP_SUCCEEDED
from .validation import validate_spec
from .vmss import DesiredScaleSet, ObservedScaleSet

logger = logging.getLogger(__name__)


class ScaleSetService:
    """Reconciles and deletes the scale set behind a fleet."""

    def __init__(
        self,
        client: ScaleSetClient,
        skus: CapabilityLookup,
        images: ImageResolver,
        bootstrap: BootstrapDataSource,
        subscription_id: str,
        cluster_tags: Mapping[str, str] | None = None,
    ) -> None:
        self._client = client
        self._skus = skus
        self._images = images
        self._bootstrap = bootstrap
        self._subscription_id = subscription_id
        self._cluster_tags = dict(cluster_tags or {})

    @property
    def name(self) -> str:
        return SCALESETS_SERVICE_NAME

    # =========================================================================
    # Reconcile
    # =========================================================================

    def reconcile(self, scope: FleetScope) -> None:
        """Run one reconcile pass for the fleet's scale set.

        Raises:
            SpecValidationError: The spec is unusable; no Azure call was made.
            OperationNotDoneError: A create or update is still running.
            ResourceConflictError: Somebody else is modifying the scale set.
            TransientError: Any other retryable failure.
        """
        # Fails fast, before any Azure call
        sku = validate_spec(scope.spec, self._skus)

        kind = OperationKind.CREATE
        err: Exception | None = None
        try:
            checkpoint = scope.get_checkpoint(SCALESETS_SERVICE_NAME)
            if checkpoint is not None:
                kind = checkpoint.kind
                if self._await(scope, checkpoint) is not None:
                    return

            checkpoint = self._fetch_and_mutate(scope, sku)
            if checkpoint is not None:
                kind = checkpoint.kind
                self._await(scope, checkpoint)
        except Exception as e:
            err = e
            raise
        finally:
            self._publish(scope)
            if kind == OperationKind.UPDATE:
                scope.update_patch_status(BOOTSTRAP_SUCCEEDED, SCALESETS_SERVICE_NAME, err)
            else:
                scope.update_put_status(BOOTSTRAP_SUCCEEDED, SCALESETS_SERVICE_NAME, err)

    def _fetch_and_mutate(
        self, scope: FleetScope, sku: ResourceSku
    ) -> OperationCheckpoint | None:
        """Create the scale set, or patch it if it drifted.

        Returns:
            The checkpoint of the started operation, or None when the scale
            set is already in sync.
        """
        rg, name = scope.resource_group, scope.scale_set_name
        try:
            observed = self._get(rg, name)
        except Exception as e:
            if not is_resource_not_found(e):
                raise wrap_error(e, f"failed to get VMSS {name}") from e

            desired = self._build(scope, sku)
            logger.info(
                "Creating scale set",
                extra={"fleet": scope.name, "scale_set": name, "capacity": desired.capacity},
            )
            return self._start(
                scope,
                lambda: self._client.create_or_update_async(rg, name, desired),
                f"failed to start creating VMSS {name}",
            )

        scope.set_observed(observed)
        desired = self._build(scope, sku)
        decision = compute_patch(observed, desired, scope.max_surge())
        if not decision.needed:
            return None

        patch = decision.patch
        assert patch is not None
        logger.info(
            "Patching scale set",
            extra={
                "fleet": scope.name,
                "scale_set": name,
                "changed_fields": list(decision.changed_fields),
                "observed_capacity": observed.capacity,
                "target_capacity": patch.capacity,
            },
        )
        return self._start(
            scope,
            lambda: self._client.update_async(rg, name, patch),
            f"failed to start updating VMSS {name}",
        )

    # =========================================================================
    # Delete
    # =========================================================================

    def delete(self, scope: FleetScope) -> None:
        """Run one delete pass for the fleet's scale set.

        A create or update still in flight is waited out first. A scale set
        that is already gone counts as deleted.

        Raises:
            OperationNotDoneError: The delete (or a prior operation) is still
                running.
            TransientError: Any other retryable failure.
        """
        rg, name = scope.resource_group, scope.scale_set_name
        err: Exception | None = None
        try:
            checkpoint = scope.get_checkpoint(SCALESETS_SERVICE_NAME)
            if checkpoint is not None and checkpoint.kind != OperationKind.DELETE:
                self._await(scope, checkpoint)
                checkpoint = None

            if checkpoint is None:
                try:
                    checkpoint = self._client.delete_async(rg, name)
                except Exception as e:
                    if is_resource_not_found(e):
                        logger.info(
                            "Scale set already deleted",
                            extra={"fleet": scope.name, "scale_set": name},
                        )
                        return
                    raise wrap_error(
                        e, f"failed to delete VMSS {name} in resource group {rg}"
                    ) from e
                scope.set_checkpoint(checkpoint)

            self._await(scope, checkpoint)
            logger.info("Scale set deleted", extra={"fleet": scope.name, "scale_set": name})
        except Exception as e:
            err = e
            raise
        finally:
            self._publish(scope)
            scope.update_delete_status(BOOTSTRAP_SUCCEEDED, SCALESETS_SERVICE_NAME, err)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get(self, resource_group: str, name: str) -> ObservedScaleSet:
        observed = self._client.get(resource_group, name)
        return observed.with_instances(self._client.list_instances(resource_group, name))

    def _build(self, scope: FleetScope, sku: ResourceSku) -> DesiredScaleSet:
        spec = scope.spec
        try:
            image = self._images.resolve(spec)
        except Exception as e:
            raise wrap_error(e, f"failed to get VM image for fleet {spec.name}") from e
        try:
            bootstrap_data = self._bootstrap.get_bootstrap_data(spec)
        except Exception as e:
            raise wrap_error(e, f"failed to retrieve bootstrap data for fleet {spec.name}") from e
        scope.save_image(image)

        return ScaleSetBuilder(
            spec,
            sku,
            image,
            bootstrap_data,
            subscription_id=self._subscription_id,
            cluster_tags=self._cluster_tags,
        ).build()

    def _start(
        self,
        scope: FleetScope,
        start: Callable[[], OperationCheckpoint],
        failure_message: str,
    ) -> OperationCheckpoint:
        """Issue a mutating call and record its checkpoint.

        The checkpoint is written only after Azure accepted the call.
        """
        try:
            checkpoint = start()
        except Exception as e:
            raise wrap_error(e, failure_message) from e
        scope.set_checkpoint(checkpoint)
        return checkpoint

    def _await(
        self, scope: FleetScope, checkpoint: OperationCheckpoint
    ) -> ObservedScaleSet | None:
        """Poll a checkpointed operation once, without blocking.

        Clears the checkpoint when the operation is over. A create or update
        whose target vanished is over too; the next fetch starts again.

        Returns:
            The scale set after a finished create or update, None after a
            finished delete or a vanished target.

        Raises:
            OperationNotDoneError: Still running; the checkpoint is kept.
        """
        operation = checkpoint.describe()
        try:
            result = self._client.get_result_if_done(checkpoint)
        except OperationNotDoneError as e:
            logger.debug("Operation not done", extra={"fleet": scope.name, "operation": operation})
            raise wrap_error(e, f"operation {operation} is in progress") from e
        except OperationFailedError as e:
            scope.delete_checkpoint(SCALESETS_SERVICE_NAME)
            raise wrap_error(e, f"operation {operation} failed") from e
        except Exception as e:
            if not is_resource_not_found(e):
                raise wrap_error(e, f"failed to get result of operation {operation}") from e
            logger.warning(
                "Scale set vanished while an operation was outstanding, dropping checkpoint",
                extra={"fleet": scope.name, "operation": operation},
            )
            scope.delete_checkpoint(SCALESETS_SERVICE_NAME)
            return None

        scope.delete_checkpoint(SCALESETS_SERVICE_NAME)
        logger.info("Operation completed", extra={"fleet": scope.name, "operation": operation})
        if result is None:
            scope.set_observed(None)
            return None

        observed = result.with_instances(
            self._client.list_instances(checkpoint.resource_group, checkpoint.name)
        )
        scope.set_observed(observed)
        return observed

    def _publish(self, scope: FleetScope) -> None:
        """Best-effort refresh of the observed scale set.

        Runs on every path. Failures are logged, never raised: the pass
        already has an outcome.
        """
        if scope.observed is not None:
            return
        rg, name = scope.resource_group, scope.scale_set_name
        try:
            scope.set_observed(self._get(rg, name))
        except Exception as e:
            if is_resource_not_found(e):
                return
            logger.warning(
                "Failed to refresh scale set state",
                extra={"fleet": scope.name, "scale_set": name, "error": str(e)},
            )
