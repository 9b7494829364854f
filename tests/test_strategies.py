"""Tests for deployment strategies."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from vmss_operator.models import DeletePolicy, DeploymentStrategySpec
from vmss_operator.records import OwnerReference, TrackingRecord
from vmss_operator.strategies import (
    RollingUpdateStrategy,
    new_deployment_strategy,
    scaled_value,
)

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


def _record(
    index: int,
    *,
    ready: bool = True,
    latest: bool = True,
    state: str = "Succeeded",
    delete_requested: bool = False,
) -> TrackingRecord:
    return TrackingRecord(
        name=f"pool0-{index}",
        provider_id=f"azure:///vm/{index}",
        instance_id=str(index),
        owner=OwnerReference(kind="Fleet", name="pool0"),
        ready=ready,
        latest_model_applied=latest,
        provisioning_state=state,
        created_at=BASE_TIME + timedelta(minutes=index),
        delete_requested=delete_requested,
    )


def _by_provider_id(*records: TrackingRecord) -> dict[str, TrackingRecord]:
    return {r.provider_id: r for r in records}


class TestScaledValue:
    """Tests for int-or-percentage resolution."""

    def test_int_passthrough(self) -> None:
        assert scaled_value(2, 10, round_up=True) == 2

    def test_percentage_rounding(self) -> None:
        """Test surge rounds up and unavailable rounds down."""
        assert scaled_value("25%", 5, round_up=True) == 2
        assert scaled_value("25%", 5, round_up=False) == 1

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            scaled_value("25", 5, round_up=True)


class TestNewDeploymentStrategy:
    """Tests for strategy selection."""

    def test_absent_means_none(self) -> None:
        """Test that no strategy spec disables the strategy."""
        assert new_deployment_strategy(None) is None

    def test_unknown_type_means_none(self) -> None:
        """Test that an unknown type is not an error."""
        assert new_deployment_strategy(DeploymentStrategySpec(type="BlueGreen")) is None

    def test_rolling_update_defaults(self) -> None:
        """Test RollingUpdate without settings uses defaults."""
        strategy = new_deployment_strategy(DeploymentStrategySpec(type="RollingUpdate"))

        assert isinstance(strategy, RollingUpdateStrategy)
        assert strategy.surge(3) == 1


class TestSelectRecordsToDelete:
    """Tests for RollingUpdateStrategy.select_records_to_delete."""

    def test_failed_records_first(self) -> None:
        """Test that failed and requested records are deleted before anything else."""
        strategy = RollingUpdateStrategy()
        records = _by_provider_id(
            _record(0),
            _record(1, ready=False, state="Failed"),
            _record(2, delete_requested=True),
        )

        selected = strategy.select_records_to_delete(3, records)

        assert [r.name for r in selected] == ["pool0-1", "pool0-2"]

    def test_nothing_while_below_desired_ready(self) -> None:
        """Test that nothing is deleted while too few records are ready."""
        strategy = RollingUpdateStrategy()
        records = _by_provider_id(_record(0, latest=False), _record(1, ready=False))

        assert strategy.select_records_to_delete(2, records) == []

    def test_over_provisioned_prefers_outdated(self) -> None:
        """Test surplus deletion picks outdated records first."""
        strategy = RollingUpdateStrategy()
        records = _by_provider_id(
            _record(0), _record(1, latest=False), _record(2), _record(3)
        )

        selected = strategy.select_records_to_delete(3, records)

        assert [r.name for r in selected] == ["pool0-1"]

    def test_over_provisioned_oldest_first(self) -> None:
        """Test surplus deletion of up-to-date records goes oldest first."""
        strategy = RollingUpdateStrategy()
        records = _by_provider_id(_record(2), _record(0), _record(1))

        selected = strategy.select_records_to_delete(1, records)

        assert [r.name for r in selected] == ["pool0-0", "pool0-1"]

    def test_newest_policy(self) -> None:
        """Test the Newest delete policy."""
        strategy = RollingUpdateStrategy(delete_policy=DeletePolicy.NEWEST)
        records = _by_provider_id(_record(0), _record(1), _record(2))

        selected = strategy.select_records_to_delete(2, records)

        assert [r.name for r in selected] == ["pool0-2"]

    def test_outdated_at_desired_respects_max_unavailable(self) -> None:
        """Test outdated replacement is bounded by max unavailable."""
        strategy = RollingUpdateStrategy(max_unavailable=1)
        records = _by_provider_id(
            _record(0, latest=False), _record(1, latest=False), _record(2)
        )

        selected = strategy.select_records_to_delete(3, records)

        assert [r.name for r in selected] == ["pool0-0"]

    def test_outdated_at_desired_with_zero_unavailable(self) -> None:
        """Test that zero max unavailable waits for surge instead."""
        strategy = RollingUpdateStrategy(max_unavailable=0)
        records = _by_provider_id(_record(0, latest=False), _record(1))

        assert strategy.select_records_to_delete(2, records) == []

    def test_in_sync_selects_nothing(self) -> None:
        """Test that a settled fleet keeps every record."""
        strategy = RollingUpdateStrategy()
        records = _by_provider_id(_record(0), _record(1))

        assert strategy.select_records_to_delete(2, records) == []
