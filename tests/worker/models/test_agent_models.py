"""Tests for agent lifecycle models."""

import pytest

from agentfleet.worker.models import (
    AgentSnapshot,
    AgentStatus,
    InvalidTransitionError,
    can_transition,
    ensure_transition,
)
from agentfleet.worker.models.agent import ActualState


class TestLifecycleTransitions:
    """Test the explicit agent state machine."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (AgentStatus.STOPPED, AgentStatus.STARTING),
            (AgentStatus.STARTING, AgentStatus.RUNNING),
            (AgentStatus.RUNNING, AgentStatus.STOPPING),
            (AgentStatus.STOPPING, AgentStatus.STOPPED),
            (AgentStatus.ERROR, AgentStatus.STARTING),
            (AgentStatus.RUNNING, AgentStatus.STOPPED),
        ],
    )
    def test_happy_path_transitions(self, current: AgentStatus, target: AgentStatus) -> None:
        assert can_transition(current, target)

    @pytest.mark.parametrize("current", list(AgentStatus))
    def test_error_reachable_from_every_status(self, current: AgentStatus) -> None:
        assert can_transition(current, AgentStatus.ERROR)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (AgentStatus.STOPPED, AgentStatus.RUNNING),
            (AgentStatus.STOPPING, AgentStatus.RUNNING),
            (AgentStatus.ERROR, AgentStatus.RUNNING),
        ],
    )
    def test_rejected_transitions(self, current: AgentStatus, target: AgentStatus) -> None:
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError):
            ensure_transition(current, target)

    def test_self_transition_allowed(self) -> None:
        ensure_transition(AgentStatus.RUNNING, AgentStatus.RUNNING)


def test_snapshot_status_defaults_to_stopped() -> None:
    """An agent without an actual-state row counts as stopped."""
    snapshot = AgentSnapshot(id="a1", name="agent", framework="openclaw")
    assert snapshot.status == AgentStatus.STOPPED

    snapshot.actual = ActualState(agent_id="a1", status=AgentStatus.RUNNING)
    assert snapshot.status == AgentStatus.RUNNING
