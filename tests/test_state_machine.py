"""
Tests for the recovery session state machine and the orchestration context.
"""

import pytest

from surebackup.models.session import SessionStatus
from surebackup.services.recovery import (
    InvalidTransitionError,
    OrchestrationContext,
    RecoveryError,
    SessionCollisionError,
    SessionStateMachine,
    recovery_name_for,
)


@pytest.fixture
def session(machine, target_factory):
    return machine.begin_restore(target_factory("web01"), "web01_SureBackup_20261016_020000", "FullRestore", tier=1)


class TestTransitions:

    def test_begin_restore_registers_before_anything_else(self, machine, context, session):
        assert session.status == SessionStatus.RESTORING
        assert context.get_session(session.recovery_name) is session
        assert [status for status, _ in session.history] == [SessionStatus.PENDING, SessionStatus.RESTORING]
        assert session.restore_point_id == "rp-web01"
        assert session.tier == 1

    def test_happy_path(self, machine, session):
        machine.record_resource(session, "vm-1")
        machine.mark_powered_on(session)
        machine.begin_testing(session)
        machine.complete_testing(session, passed=True)
        machine.mark_cleaned_up(session)

        assert [s for s, _ in session.history] == [
            SessionStatus.PENDING,
            SessionStatus.RESTORING,
            SessionStatus.POWERED_ON,
            SessionStatus.TESTING,
            SessionStatus.PASSED,
            SessionStatus.CLEANED_UP,
        ]
        assert not session.has_failed

    def test_failed_verdict_records_error(self, machine, session):
        machine.mark_powered_on(session)
        machine.begin_testing(session)
        machine.complete_testing(session, passed=False, detail="Failed checks: Ping")

        assert session.status == SessionStatus.FAILED
        assert session.last_error == "Failed checks: Ping"

    def test_cannot_skip_power_on(self, machine, session):
        with pytest.raises(InvalidTransitionError):
            machine.begin_testing(session)

    def test_cleaned_up_is_terminal(self, machine, session):
        machine.mark_cleaned_up(session)

        with pytest.raises(InvalidTransitionError):
            machine.mark_powered_on(session)

    def test_cleanup_twice_is_noop(self, machine, session):
        assert machine.mark_cleaned_up(session) is True
        assert machine.mark_cleaned_up(session) is False
        assert [s for s, _ in session.history].count(SessionStatus.CLEANED_UP) == 1

    def test_failed_from_any_non_terminal_state(self, machine, session):
        machine.mark_failed(session, "boom")
        machine.mark_failed(session, "boom again")

        assert session.status == SessionStatus.FAILED
        assert session.last_error == "boom again"
        assert [s for s, _ in session.history].count(SessionStatus.FAILED) == 1

    def test_failure_survives_cleanup_in_history(self, machine, session):
        machine.mark_failed(session, "boom")
        machine.mark_cleaned_up(session)

        assert session.has_failed

    def test_resource_id_is_set_once(self, machine, session):
        machine.record_resource(session, "vm-1")
        machine.record_resource(session, "vm-1")

        with pytest.raises(RecoveryError):
            machine.record_resource(session, "vm-2")
        assert session.resource_id == "vm-1"


class TestContext:

    def test_recovery_names_collide(self, machine, target_factory, session):
        with pytest.raises(SessionCollisionError):
            machine.begin_restore(target_factory("web01"), session.recovery_name, "FullRestore")

    def test_recovery_name_format(self):
        assert recovery_name_for("web01", "SureBackup", "20261016_020000") == "web01_SureBackup_20261016_020000"

    def test_success_requires_results(self):
        assert OrchestrationContext().build_result().success is False

    def test_skipped_targets_fail_the_run(self, context):
        context.skip_targets(["app01"])

        assert context.build_result().success is False

    def test_warnings_are_deduplicated(self, context):
        context.add_warnings(["network guessed", "network guessed"])

        assert context.warnings() == ["network guessed"]

    def test_journal_errors_do_not_stop_transitions(self, target_factory):
        class BrokenJournal:
            def record(self, run_id, session):
                raise OSError("disk full")

        context = OrchestrationContext(journal=BrokenJournal())
        session = SessionStateMachine(context).begin_restore(target_factory("web01"), "x", "FullRestore")

        assert session.status == SessionStatus.RESTORING
