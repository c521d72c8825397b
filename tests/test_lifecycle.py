from __future__ import annotations

import pytest

from cloudreconcile.backoff import BackoffPolicy
from cloudreconcile.classifier import ApiError
from cloudreconcile.config import EngineConfig
from cloudreconcile.errors import (
    ConvergenceFailedError,
    ConvergenceTimeoutError,
    ExitCode,
    FatalConfigurationError,
    FatalOperationError,
    IdentityFormatError,
    RetriesExhaustedError,
)
from cloudreconcile.identity import ResourceIdentity
from cloudreconcile.lifecycle import (
    Operation,
    OutcomeStatus,
    Phase,
    Reconciler,
    changed_fields,
    outcome_status_for,
)

_POLICY = BackoffPolicy(base_delay=1.0, growth=2.0, jitter_ratio=0.0, max_delay=8.0)


class FakeVendor:
    """In-memory vendor API with scripted failures and state transitions."""

    def __init__(self, states: list[tuple[str, bool]], failures: list[BaseException] | None = None) -> None:
        self.states = list(states)
        self.failures = list(failures or [])
        self.calls = 0
        self.describes: list[ResourceIdentity] = []

    def mutate(self) -> dict[str, str]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return {"InstanceId": "inst-1", "TableName": "orders"}

    def describe(self, identity: ResourceIdentity) -> tuple[str, bool]:
        self.describes.append(identity)
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]


def _reconciler(clock) -> Reconciler:
    return Reconciler(policy=_POLICY, clock=clock, poll_interval=5)


def _identify(response: dict[str, str]) -> ResourceIdentity:
    return ResourceIdentity.of(response["InstanceId"], response["TableName"])


def test_create_retries_throttling_then_converges(clock) -> None:
    vendor = FakeVendor(
        states=[("Creating", True), ("Creating", True), ("Running", True)],
        failures=[ApiError("Throttling", "slow down")],
    )
    recorded: list[str] = []

    outcome = _reconciler(clock).create(
        vendor.mutate,
        identify=_identify,
        describe=vendor.describe,
        target={"Running"},
        pending={"Creating"},
        fail={"Failed"},
        timeout=120,
        on_identity=recorded.append,
    )

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.ok
    assert outcome.phase is Phase.DONE
    assert outcome.operation is Operation.CREATE
    assert outcome.identity == "inst-1:orders"
    assert outcome.final_state == "Running"
    assert outcome.attempts == 2
    assert outcome.probes == 3
    assert recorded == ["inst-1:orders"]
    assert vendor.describes[0] == ResourceIdentity.of("inst-1", "orders")
    assert clock.sleeps == [1.0, 5, 5]


def test_create_throttled_once_then_running_after_one_poll(clock) -> None:
    vendor = FakeVendor(states=[("Creating", True), ("Running", True)], failures=[ApiError("Throttling")])

    outcome = _reconciler(clock).create(
        vendor.mutate, identify=_identify, describe=vendor.describe, target={"Running"}, timeout=60
    )

    assert outcome.ok
    assert vendor.calls == 2
    assert outcome.probes == 2
    assert outcome.elapsed >= 1.0 + 5.0


def test_create_fails_fast_on_validation_error(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)], failures=[ApiError("InvalidParameter.Name", "bad")])

    outcome = _reconciler(clock).create(
        vendor.mutate, identify=_identify, describe=vendor.describe, target={"Running"}, timeout=60
    )

    assert outcome.status is OutcomeStatus.FAILED_FAST
    assert outcome.phase is Phase.REQUESTING
    assert outcome.identity == ""
    assert outcome.probes == 0
    assert vendor.calls == 1
    assert isinstance(outcome.error, FatalOperationError)
    assert outcome.error.phase == "requesting"


def test_create_persistent_throttling_fails_after_retries(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)], failures=[ApiError("Throttling")] * 20)

    outcome = _reconciler(clock).create(
        vendor.mutate, identify=_identify, describe=vendor.describe, target={"Running"}, timeout=10
    )

    assert outcome.status is OutcomeStatus.FAILED_AFTER_RETRIES
    assert isinstance(outcome.error, RetriesExhaustedError)
    assert outcome.probes == 0


def test_create_failure_state_keeps_identity(clock) -> None:
    vendor = FakeVendor(states=[("Creating", True), ("Failed", True)])
    recorded: list[str] = []

    outcome = _reconciler(clock).create(
        vendor.mutate,
        identify=_identify,
        describe=vendor.describe,
        target={"Running"},
        fail={"Failed"},
        timeout=60,
        on_identity=recorded.append,
    )

    assert outcome.status is OutcomeStatus.FAILED_FAST
    assert outcome.phase is Phase.CONVERGING
    assert outcome.identity == "inst-1:orders"
    assert recorded == ["inst-1:orders"]
    assert isinstance(outcome.error, ConvergenceFailedError)
    assert outcome.error.identity == "inst-1:orders"


def test_create_timeout_reports_last_state(clock) -> None:
    vendor = FakeVendor(states=[("Creating", True)])

    outcome = _reconciler(clock).create(
        vendor.mutate, identify=_identify, describe=vendor.describe, target={"Running"}, timeout=12
    )

    assert outcome.status is OutcomeStatus.TIMED_OUT
    assert outcome.final_state == "Creating"
    assert isinstance(outcome.error, ConvergenceTimeoutError)
    assert outcome.elapsed <= 12


def test_create_with_bad_identity_fails_fast(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)])

    outcome = _reconciler(clock).create(
        vendor.mutate,
        identify=lambda _: ResourceIdentity.of("inst:1"),
        describe=vendor.describe,
        target={"Running"},
        timeout=60,
    )

    assert outcome.status is OutcomeStatus.FAILED_FAST
    assert isinstance(outcome.error, IdentityFormatError)


def test_update_without_changes_skips_call_but_converges(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)])

    outcome = _reconciler(clock).update(
        vendor.mutate,
        identity="inst-1:orders",
        changed=False,
        describe=vendor.describe,
        target={"Running"},
        timeout=60,
    )

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.skipped_request is True
    assert outcome.attempts == 0
    assert vendor.calls == 0
    assert outcome.probes == 1


def test_update_with_changes_issues_call(clock) -> None:
    vendor = FakeVendor(states=[("Updating", True), ("Running", True)], failures=[ApiError("OperationConflict")])

    outcome = _reconciler(clock).update(
        vendor.mutate,
        identity=ResourceIdentity.of("inst-1", "orders"),
        changed=True,
        describe=vendor.describe,
        target={"Running"},
        timeout=60,
    )

    assert outcome.ok
    assert vendor.calls == 2
    assert outcome.probes == 2


def test_delete_not_found_succeeds_without_polling(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)], failures=[ApiError("InvalidInstanceId.NotFound")])

    outcome = _reconciler(clock).delete(
        vendor.mutate, identity="inst-1:orders", describe=vendor.describe, timeout=60
    )

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.probes == 0
    assert outcome.final_state is None
    assert vendor.describes == []


def test_delete_polls_until_absent(clock) -> None:
    vendor = FakeVendor(states=[("Deleting", True), ("Deleting", True), ("", False)])

    outcome = _reconciler(clock).delete(
        vendor.mutate, identity="inst-1:orders", describe=vendor.describe, timeout=60
    )

    assert outcome.ok
    assert outcome.probes == 3


def test_delete_succeeds_when_describe_reports_not_found(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)])

    def describe(identity: ResourceIdentity) -> tuple[str, bool]:
        vendor.describes.append(identity)
        raise ApiError("InvalidInstance.NotFound", "instance is gone")

    outcome = _reconciler(clock).delete(vendor.mutate, identity="inst-1:orders", describe=describe, timeout=30)

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert vendor.calls == 1
    assert outcome.probes == 1


def test_delete_timeout_when_resource_lingers(clock) -> None:
    vendor = FakeVendor(states=[("Deleting", True)])

    outcome = _reconciler(clock).delete(
        vendor.mutate, identity="inst-1:orders", describe=vendor.describe, timeout=9
    )

    assert outcome.status is OutcomeStatus.TIMED_OUT
    assert outcome.phase is Phase.CONVERGING
    assert "still exists" in outcome.error.message


def test_single_deadline_spans_both_phases(clock) -> None:
    vendor = FakeVendor(states=[("Creating", True)], failures=[ApiError("Throttling")] * 3)

    outcome = _reconciler(clock).create(
        vendor.mutate, identify=_identify, describe=vendor.describe, target={"Running"}, timeout=15
    )

    # Retries consume 1 + 2 + 4 seconds, leaving 8 seconds for two polls.
    assert outcome.status is OutcomeStatus.TIMED_OUT
    assert outcome.error.message.startswith("Timeout in 15 seconds.")
    assert outcome.attempts == 4
    assert outcome.probes == 2
    assert clock.now - 1000.0 <= 15


def test_invalid_timeout_raises_configuration_error(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)])

    with pytest.raises(FatalConfigurationError):
        _reconciler(clock).delete(vendor.mutate, identity="a", describe=vendor.describe, timeout=-5)
    assert vendor.calls == 0


def test_invalid_wait_options_rejected_before_create_call(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)])
    recorded: list[str] = []

    with pytest.raises(FatalConfigurationError):
        _reconciler(clock).create(
            vendor.mutate,
            identify=_identify,
            describe=vendor.describe,
            target={"Running"},
            timeout=30,
            poll_interval=-1,
            on_identity=recorded.append,
        )

    assert vendor.calls == 0
    assert recorded == []


@pytest.mark.parametrize("options", [{"continuous_target_occurrence": 0}, {"unknown_option": True}])
def test_invalid_wait_options_rejected_before_update_call(clock, options: dict[str, object]) -> None:
    vendor = FakeVendor(states=[("Running", True)])

    with pytest.raises(FatalConfigurationError):
        _reconciler(clock).update(
            vendor.mutate,
            identity="a",
            changed=True,
            describe=vendor.describe,
            target={"Running"},
            timeout=30,
            **options,
        )

    assert vendor.calls == 0


def test_invalid_wait_options_rejected_before_delete_call(clock) -> None:
    vendor = FakeVendor(states=[("", False)])

    with pytest.raises(FatalConfigurationError):
        _reconciler(clock).delete(vendor.mutate, identity="a", describe=vendor.describe, timeout=30, delay=-2)

    assert vendor.calls == 0


def test_raise_for_status_reraises_stored_error(clock) -> None:
    vendor = FakeVendor(states=[("Running", True)], failures=[ApiError("Forbidden")])

    outcome = _reconciler(clock).delete(vendor.mutate, identity="a", describe=vendor.describe, timeout=30)

    with pytest.raises(FatalOperationError) as exc_info:
        outcome.raise_for_status()
    assert exc_info.value.code == ExitCode.OPERATION_ERROR


def test_from_config_uses_engine_settings(clock) -> None:
    config = EngineConfig(base_delay=2.0, max_delay=4.0, jitter_ratio=0.0, poll_interval=3.0, initial_delay=1.0)
    reconciler = Reconciler.from_config(config, clock=clock)
    vendor = FakeVendor(states=[("Creating", True), ("Running", True)])

    outcome = reconciler.create(vendor.mutate, identify=_identify, describe=vendor.describe, target={"Running"}, timeout=60)

    assert outcome.ok
    assert reconciler.policy.base_delay == 2.0
    assert clock.sleeps == [1.0, 3.0]


def test_changed_fields_reports_only_watched_differences() -> None:
    desired = {"name": "orders", "size": 20, "tags": {"env": "prod"}}
    current = {"name": "orders", "size": 10, "tags": {"env": "prod"}, "ignored": True}

    assert changed_fields(desired, current, ["name", "size", "tags", "missing"]) == ["size"]


def test_outcome_status_mapping() -> None:
    assert outcome_status_for(ConvergenceTimeoutError("t")) is OutcomeStatus.TIMED_OUT
    assert outcome_status_for(RetriesExhaustedError("r")) is OutcomeStatus.FAILED_AFTER_RETRIES
    assert outcome_status_for(ConvergenceFailedError("f")) is OutcomeStatus.FAILED_FAST
