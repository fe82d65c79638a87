"""Unit tests for the Live Aid tube rotation controller."""

from types import MappingProxyType

import pytest

from src.liveaid.errors import ConcurrentRotationError, ErrorCode, NotFoundError, PreparationError, RotationError
from src.liveaid.models import TubeId, TubeStatus
from src.liveaid.rotation import MANUAL, SESSION_COMPLETE, TubeRotationController

LIVE, READY, PREPARING = TubeStatus.LIVE, TubeStatus.READY, TubeStatus.PREPARING


@pytest.fixture
def prep_requests():
    return []


@pytest.fixture
def controller(registry, prep_requests):
    def request(user_id, tube_id):
        prep_requests.append((user_id, tube_id))
        return True

    return TubeRotationController(registry, request)


@pytest.fixture
def user(make_user, controller):
    state = make_user("u1", {TubeId.TUBE1: ["A"], TubeId.TUBE2: ["B"], TubeId.TUBE3: ["C"]})
    controller.initialize_user("u1")
    return state


class TestInitialize:
    def test_initial_assignment(self, controller, user, prep_requests):
        assert dict(controller.get_tube_states("u1")) == {
            TubeId.TUBE1: LIVE,
            TubeId.TUBE2: READY,
            TubeId.TUBE3: PREPARING,
        }
        assert prep_requests == [("u1", TubeId.TUBE3)]

    def test_accessors(self, controller, user):
        assert controller.live_tube("u1") == TubeId.TUBE1
        assert controller.ready_tube("u1") == TubeId.TUBE2
        assert controller.preparing_tube("u1") == TubeId.TUBE3

    def test_double_initialize_rejected(self, controller, user):
        with pytest.raises(RotationError):
            controller.initialize_user("u1")

    def test_unknown_user(self, controller):
        with pytest.raises(NotFoundError) as exc_info:
            controller.get_tube_states("ghost")
        assert exc_info.value.code == ErrorCode.USER_NOT_FOUND


class TestRotate:
    def test_cycle(self, controller, user):
        result = controller.rotate_tubes("u1", SESSION_COMPLETE)

        assert dict(controller.get_tube_states("u1")) == {
            TubeId.TUBE1: PREPARING,
            TubeId.TUBE2: LIVE,
            TubeId.TUBE3: READY,
        }
        assert result.previous_live == TubeId.TUBE1
        assert result.new_live == TubeId.TUBE2
        assert result.rotation_number == 1
        assert len(result.transitions) == 3
        assert {(t.tube_id, t.from_status, t.to_status) for t in result.transitions} == {
            (TubeId.TUBE1, LIVE, PREPARING),
            (TubeId.TUBE2, READY, LIVE),
            (TubeId.TUBE3, PREPARING, READY),
        }
        assert all(t.trigger_reason == SESSION_COMPLETE for t in result.transitions)

    def test_three_rotations_return_to_start(self, controller, user):
        start = dict(controller.get_tube_states("u1"))
        for _ in range(3):
            controller.rotate_tubes("u1")
        assert dict(controller.get_tube_states("u1")) == start
        assert user.rotation_count == 3

    def test_requests_preparation_for_new_preparing_tube(self, controller, user, prep_requests):
        result = controller.rotate_tubes("u1", MANUAL)

        assert prep_requests[-1] == ("u1", TubeId.TUBE1)
        assert result.preparation_requested is True

    def test_preparation_failure_does_not_fail_rotation(self, registry, make_user):
        def failing(user_id, tube_id):
            raise PreparationError(ErrorCode.PREPARATION_FAILED, "generator down")

        controller = TubeRotationController(registry, failing)
        make_user("u2", {TubeId.TUBE1: ["A"], TubeId.TUBE2: ["B"], TubeId.TUBE3: ["C"]})
        controller.initialize_user("u2")

        result = controller.rotate_tubes("u2")

        assert result.preparation_requested is False
        assert controller.live_tube("u2") == TubeId.TUBE2

    def test_broken_assignment_is_not_repaired(self, controller, user):
        broken = MappingProxyType({TubeId.TUBE1: LIVE, TubeId.TUBE2: LIVE, TubeId.TUBE3: PREPARING})
        user.tube_statuses = broken

        with pytest.raises(RotationError) as exc_info:
            controller.rotate_tubes("u1")

        assert exc_info.value.code == ErrorCode.ROTATION_FAILED
        assert user.tube_statuses is broken
        assert user.rotation_count == 0

    def test_concurrent_rotation_rejected(self, controller, user):
        controller._rotating.add("u1")

        with pytest.raises(ConcurrentRotationError) as exc_info:
            controller.rotate_tubes("u1")

        assert exc_info.value.code == ErrorCode.ROTATION_FAILED
        assert exc_info.value.retryable is True
        assert controller.live_tube("u1") == TubeId.TUBE1
        assert controller.metrics.concurrent_rejections == 1
        assert controller.metrics.failures == 0

    def test_broken_assignment_is_not_concurrent(self, controller, user):
        user.tube_statuses = MappingProxyType({TubeId.TUBE1: LIVE})

        with pytest.raises(RotationError) as exc_info:
            controller.rotate_tubes("u1")

        assert not isinstance(exc_info.value, ConcurrentRotationError)
        assert exc_info.value.retryable is False

    def test_guard_released_after_failure(self, controller, user):
        good = user.tube_statuses
        user.tube_statuses = MappingProxyType({TubeId.TUBE1: LIVE})
        with pytest.raises(RotationError):
            controller.rotate_tubes("u1")

        user.tube_statuses = good
        assert controller.rotate_tubes("u1").rotation_number == 1


class TestRotationMetrics:
    def test_counts_and_timing(self, controller, user):
        controller.rotate_tubes("u1")
        controller.rotate_tubes("u1", MANUAL)

        assert controller.metrics.rotations == 2
        assert controller.metrics.average_rotation_ms >= 0

    def test_failures_counted(self, controller, user):
        user.tube_statuses = MappingProxyType({TubeId.TUBE1: LIVE})
        with pytest.raises(RotationError):
            controller.rotate_tubes("u1")

        assert controller.metrics.failures == 1
        assert controller.metrics.rotations == 0
        assert controller.metrics.average_rotation_ms == 0.0


class TestShouldRotate:
    def test_session_on_live_tube(self, controller, user):
        assert controller.should_rotate("u1", SESSION_COMPLETE, TubeId.TUBE1) is True

    def test_session_on_other_tube(self, controller, user):
        assert controller.should_rotate("u1", SESSION_COMPLETE, TubeId.TUBE2) is False

    def test_manual_always_rotates(self, controller, user):
        assert controller.should_rotate("u1", MANUAL) is True

    def test_unknown_trigger(self, controller, user):
        assert controller.should_rotate("u1", "cache_warm", TubeId.TUBE1) is False
