"""Deployment strategies: surge calculation and delete selection.

A strategy is chosen by the ``strategy.type`` field of the fleet spec. Only
RollingUpdate is implemented. An absent or unknown type yields no strategy,
which means no surge and no scale-down selection; it is not an error.
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from .models import ROLLING_UPDATE_STRATEGY, DeletePolicy, DeploymentStrategySpec, RollingUpdate
from .records import TrackingRecord
from .vmss import ProvisioningState

logger = logging.getLogger(__name__)


class DeploymentStrategy(Protocol):
    def surge(self, desired_replicas: int) -> int: ...

    def select_records_to_delete(
        self, desired_replicas: int, records: Mapping[str, TrackingRecord]
    ) -> list[TrackingRecord]: ...


def scaled_value(value: int | str, total: int, round_up: bool) -> int:
    """Resolve an absolute or percentage value against a total.

    Args:
        value: An int, or a string like "25%".
        total: What the percentage is relative to.
        round_up: Round fractional results up instead of down.
    """
    if isinstance(value, int):
        return value
    if not value.endswith("%"):
        raise ValueError(f"invalid value for int or percentage: {value!r}")
    percent = int(value[:-1])
    scaled = percent * total / 100
    return math.ceil(scaled) if round_up else math.floor(scaled)


@dataclass(frozen=True)
class RollingUpdateStrategy:
    """Replace out-of-date instances a few at a time.

    Surge adds up to ``max_surge`` instances on top of the desired count
    while a model change rolls out. Surplus records are then deleted in
    ``delete_policy`` order, without dropping below ``desired -
    max_unavailable`` ready instances.
    """

    max_surge: int | str = 1
    max_unavailable: int | str = 0
    delete_policy: DeletePolicy = DeletePolicy.OLDEST

    def surge(self, desired_replicas: int) -> int:
        return scaled_value(self.max_surge, desired_replicas, round_up=True)

    def max_unavailable_count(self, desired_replicas: int) -> int:
        return scaled_value(self.max_unavailable, desired_replicas, round_up=False)

    def select_records_to_delete(
        self, desired_replicas: int, records: Mapping[str, TrackingRecord]
    ) -> list[TrackingRecord]:
        """Pick records to delete to converge on ``desired_replicas``.

        Args:
            desired_replicas: Target instance count.
            records: Live tracking records keyed by provider id.

        Returns:
            Records to delete, possibly empty.
        """
        candidates = list(records.values())
        max_unavailable = self.max_unavailable_count(desired_replicas)

        failed_or_requested = self._order(
            [
                r
                for r in candidates
                if r.delete_requested or r.provisioning_state == ProvisioningState.FAILED.value
            ]
        )
        if failed_or_requested:
            logger.info(
                "Deleting failed or delete-requested records",
                extra={"records": [r.name for r in failed_or_requested]},
            )
            return failed_or_requested

        ready = self._order([r for r in candidates if r.ready])
        if len(ready) < desired_replicas:
            logger.debug(
                "Not enough ready records to delete any",
                extra={"ready": len(ready), "desired": desired_replicas},
            )
            return []

        outdated = self._order([r for r in candidates if not r.latest_model_applied])

        over_provisioned = len(ready) - desired_replicas
        if over_provisioned > 0:
            to_delete: list[TrackingRecord] = []
            seen: set[str] = set()
            for record in outdated + ready:
                if len(to_delete) >= over_provisioned:
                    break
                if record.provider_id in seen:
                    continue
                seen.add(record.provider_id)
                to_delete.append(record)
            return to_delete

        if not outdated:
            return []

        if max_unavailable > desired_replicas:
            budget = desired_replicas
        else:
            budget = len(ready) - desired_replicas + max_unavailable
        if budget <= 0:
            return []

        return [r for r in outdated if r.ready][:budget]

    def _order(self, records: list[TrackingRecord]) -> list[TrackingRecord]:
        match self.delete_policy:
            case DeletePolicy.NEWEST:
                return sorted(records, key=lambda r: r.created_at, reverse=True)
            case DeletePolicy.RANDOM:
                shuffled = list(records)
                random.shuffle(shuffled)
                return shuffled
            case _:
                return sorted(records, key=lambda r: r.created_at)


def new_deployment_strategy(spec: DeploymentStrategySpec | None) -> DeploymentStrategy | None:
    """Select the strategy variant for a spec, or None to disable it."""
    if spec is None:
        return None
    match spec.type:
        case "RollingUpdate":
            rolling = spec.rolling_update or RollingUpdate()
            return RollingUpdateStrategy(
                max_surge=rolling.max_surge,
                max_unavailable=rolling.max_unavailable,
                delete_policy=rolling.delete_policy,
            )
        case _:
            logger.warning(
                "Unknown deployment strategy type, scale-down selection disabled",
                extra={"strategy_type": spec.type, "supported": [ROLLING_UPDATE_STRATEGY]},
            )
            return None
