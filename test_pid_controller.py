import pytest

from follower_config import Gains
from line_follower import PIDController


def test_constant_error_with_p_only_gives_constant_correction():
    pid = PIDController(i_max=4000.0)
    gains = Gains(kp=0.25, ki=0.0, kd=0.0)
    setpoint = 2000
    outputs = [pid.update(setpoint - position, gains) for position in (1500, 1500, 1500)]
    assert outputs == [125, 125, 125]


def test_first_cycle_after_reset_is_pure_proportional():
    pid = PIDController(i_max=4000.0)
    gains = Gains(kp=0.4, ki=0.7, kd=3.0)
    for e in (800, -300, 1200):
        pid.update(e, gains)

    pid.reset()
    assert pid.update(-650, gains) == pytest.approx(0.4 * -650)
    assert pid.i_term == 0
    assert pid.d_term == 0


def test_derivative_is_difference_of_consecutive_errors():
    pid = PIDController(i_max=4000.0)
    gains = Gains(kp=0.0, ki=0.0, kd=0.5)
    pid.update(100, gains)
    assert pid.update(300, gains) == pytest.approx(100)
    assert pid.derivative == 200
    assert pid.previous_error == 300


def test_integral_accumulates_after_first_cycle():
    pid = PIDController(i_max=4000.0)
    gains = Gains(kp=0.0, ki=0.1, kd=0.0)
    assert pid.update(100, gains) == 0
    assert pid.update(200, gains) == pytest.approx(20)
    assert pid.integral == 200


@pytest.mark.parametrize("error", [300, -300])
def test_integral_never_exceeds_clamp(error):
    pid = PIDController(i_max=1000.0)
    gains = Gains(kp=0.0, ki=1.0, kd=0.0)
    previous = 0.0
    for _ in range(50):
        pid.update(error, gains)
        assert abs(pid.integral) <= 1000.0
        # monotonic toward the clamp
        assert abs(pid.integral) >= abs(previous)
        previous = pid.integral
    assert pid.integral == pytest.approx(1000.0 if error > 0 else -1000.0)


def test_reset_zeroes_state():
    pid = PIDController(i_max=4000.0)
    gains = Gains(kp=1.0, ki=1.0, kd=1.0)
    pid.update(500, gains)
    pid.update(700, gains)
    pid.reset()
    assert (pid.error, pid.previous_error, pid.integral, pid.derivative) == (0, 0, 0, 0)


def test_gain_change_applies_on_next_cycle():
    pid = PIDController(i_max=4000.0)
    gains = Gains(kp=0.25, ki=0.0, kd=0.0)
    assert pid.update(400, gains) == 100
    gains.kp = 0.5
    assert pid.update(400, gains) == 200
