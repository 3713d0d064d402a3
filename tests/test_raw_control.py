import pytest

from dvbridge.lib.models.config import ManualControlConfig, StateMachineConfig
from dvbridge.lib.models.messages import ControlVector, GamepadInput, MissionState
from dvbridge.apps.control_raw.raw_control import (
    RawControl, apply_press_delta, next_mission_status, toggle_torque
)


def make_logic(ctx):
    return RawControl(ctx, ManualControlConfig(), StateMachineConfig())


def press(ctx, counts):
    ctx.gamepad = ctx.gamepad.model_copy(update={"press_counts": list(counts)})


@pytest.fixture
def logic(ctx):
    return make_logic(ctx)


def test_starts_neutral(logic, ctx):
    status = logic.refresh()
    assert ctx.control == ControlVector()
    assert status.active_case == "RAW_MANUAL"
    assert not status.ready_to_drive


def test_counter_jump_replays_every_press(logic, ctx):
    press(ctx, [3, 0, 0, 0])
    logic.refresh()
    assert ctx.control.mission_status == 3

    press(ctx, [5, 0, 0, 0])
    logic.refresh()
    assert ctx.control.mission_status == 1


def test_same_count_does_not_repeat(logic, ctx):
    press(ctx, [1, 0, 0, 0])
    logic.refresh()
    logic.refresh()
    assert ctx.control.mission_status == 1


def test_direction_estop_and_torque_toggles(logic, ctx):
    press(ctx, [0, 1, 1, 1])
    status = logic.refresh()

    assert ctx.control.direction_request == 1
    assert ctx.control.estop_request == 1
    assert ctx.control.torque_request == 1950
    assert status.emergency_active
    assert not status.allow_torque

    press(ctx, [0, 3, 2, 2])
    logic.refresh()

    assert ctx.control.direction_request == 1
    assert ctx.control.estop_request == 0
    assert ctx.control.torque_request == 0


def test_presses_before_selection_are_not_replayed(ctx):
    press(ctx, [5, 2, 0, 0])
    logic = make_logic(ctx)
    logic.refresh()
    assert ctx.control.mission_status == 0
    assert ctx.control.direction_request == 0


def test_latches_current_outputs_on_selection(ctx):
    ctx.control = ControlVector(mission_status=2, torque_request=1950, direction_request=1)
    logic = make_logic(ctx)
    logic.refresh()
    assert ctx.control.mission_status == 2
    assert ctx.control.torque_request == 1950
    assert ctx.control.direction_request == 1


def test_ignores_received_state(logic, ctx):
    ctx.mission_state = MissionState(as_state=3, ami_state=5)
    ctx.mission_timer = 4000

    status = logic.refresh()

    assert ctx.mission_timer == 0
    assert not logic.should_tick_mission_timer()
    assert status.as_state == 3


def test_axes_drive_steer_speed_brake(logic, ctx):
    ctx.gamepad = GamepadInput(x_axis=-1.0, x2_axis=0.0, y_axis=-1.0)
    logic.refresh()
    assert ctx.control.steer_request == 300
    assert ctx.control.speed_request == 4000
    assert ctx.control.brake_request == 0


def test_watermark_never_moves_backwards():
    calls = []
    assert apply_press_delta(5, 3, lambda: calls.append(1)) == 5
    assert calls == []
    assert apply_press_delta(5, 8, lambda: calls.append(1)) == 8
    assert len(calls) == 3


def test_mission_status_cycle():
    assert [next_mission_status(value) for value in range(4)] == [1, 2, 3, 0]
    assert next_mission_status(7) == 0


def test_torque_toggle():
    assert toggle_torque(0) == 1950
    assert toggle_torque(1950) == 0
    assert toggle_torque(100) == 1950
