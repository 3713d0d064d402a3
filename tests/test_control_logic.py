import math

import pytest

from dvbridge.lib.control.control_logic import ManualAxisMapping, normalize_axis, round_half_up
from dvbridge.lib.models.config import ManualControlConfig


class TestNormalizeAxis:
    @pytest.mark.parametrize("value", [0.0, 0.05, -0.05, 0.03])
    def test_inside_deadband_is_zero(self, value):
        assert normalize_axis(value, 0.05) == 0.0

    def test_full_scale(self):
        assert normalize_axis(1.0, 0.05) == 1.0
        assert normalize_axis(-1.0, 0.05) == -1.0

    def test_clamped(self):
        assert normalize_axis(3.0, 0.05) == 1.0
        assert normalize_axis(-3.0, 0.05) == -1.0

    def test_continuous_at_deadband_edge(self):
        assert normalize_axis(0.0500001, 0.05) == pytest.approx(0.0, abs=1e-6)
        assert normalize_axis(-0.0500001, 0.05) < 0

    def test_midpoint(self):
        assert normalize_axis(0.525, 0.05) == pytest.approx(0.5)

    @pytest.mark.parametrize("value", [math.nan, math.inf, None, "fast"])
    def test_non_numeric_is_zero(self, value):
        assert normalize_axis(value, 0.05) == 0.0


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
    assert round_half_up(1.4) == 1


class TestManualAxisMapping:
    @pytest.fixture
    def axes(self):
        return ManualAxisMapping(ManualControlConfig())

    def test_steer_is_inverted(self, axes):
        assert axes.steer_request(1.0, 0.0) == -300
        assert axes.steer_request(-1.0, 0.0) == 300

    def test_steer_uses_larger_stick(self, axes):
        assert axes.steer_request(0.02, -1.0) == 300
        assert axes.steer_request(0.6, 0.3) < axes.steer_request(0.0, 0.3)

    def test_steer_deadband(self, axes):
        assert axes.steer_request(0.04, -0.04) == 0

    def test_stick_forward_is_speed(self, axes):
        assert axes.speed_request(-1.0) == 4000
        assert axes.speed_request(1.0) == 0
        assert axes.speed_request(0.0) == 0

    def test_stick_back_is_brake(self, axes):
        assert axes.brake_request(1.0) == 100
        assert axes.brake_request(-1.0) == 0

    def test_configured_maxima(self):
        axes = ManualAxisMapping(ManualControlConfig(steer_max=100, speed_max=50, brake_max=10))
        assert axes.steer_request(-1.0, 0.0) == 100
        assert axes.speed_request(-1.0) == 50
        assert axes.brake_request(1.0) == 10
