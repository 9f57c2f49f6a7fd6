import pytest

from follower_config import RunState
from tuning import TuningInterface
from conftest import FakeChannel


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def tuning(follower, channel):
    return TuningInterface(follower, channel, stats=lambda: {"packets": 12})


@pytest.mark.parametrize("cmd,attr,value", [
    ("P0.5", "kp", 0.5),
    ("I0.002", "ki", 0.002),
    ("D12", "kd", 12.0),
])
def test_set_gains(tuning, channel, params, cmd, attr, value):
    channel.send(cmd)
    result = tuning.poll()
    assert result.accepted
    assert getattr(params.gains, attr) == pytest.approx(value)
    assert channel.lines[-1].startswith("OK")


@pytest.mark.parametrize("cmd", ["P-0.1", "I-3", "D-1"])
def test_negative_gain_rejected(tuning, channel, params, cmd):
    before = (params.gains.kp, params.gains.ki, params.gains.kd)
    channel.send(cmd)
    result = tuning.poll()
    assert not result.accepted
    assert (params.gains.kp, params.gains.ki, params.gains.kd) == before
    assert channel.lines[-1].startswith("ERR")


def test_gain_without_number_rejected(tuning, channel, params):
    channel.send("P\n")
    assert not tuning.poll().accepted
    assert params.gains.kp == 0.25


def test_set_speed(tuning, channel, params):
    channel.send("S200")
    assert tuning.poll().accepted
    assert params.base_speed == 200


@pytest.mark.parametrize("cmd", ["S0", "S256", "S-5", "S12.5"])
def test_speed_out_of_range_rejected(tuning, channel, params, cmd):
    channel.send(cmd)
    assert not tuning.poll().accepted
    assert params.base_speed == 170


def test_speed_upper_bound_accepted(tuning, channel, params):
    channel.send("S255")
    assert tuning.poll().accepted
    assert params.base_speed == 255


def test_run_start_and_stop(tuning, channel, params, motors, follower):
    follower.pid.integral = 900.0
    channel.send("R1")
    tuning.poll()
    assert params.run_state is RunState.RUNNING
    assert follower.pid.integral == 0

    channel.send("R0")
    tuning.poll()
    assert params.run_state is RunState.STOPPED
    assert motors.stops == 1


def test_run_without_argument_toggles(tuning, channel, params):
    channel.send("R")
    tuning.poll()
    assert params.run_state is RunState.RUNNING
    channel.send("R")
    tuning.poll()
    assert params.run_state is RunState.STOPPED


def test_run_bad_argument_rejected(tuning, channel, params):
    channel.send("R2")
    assert not tuning.poll().accepted
    assert params.run_state is RunState.STOPPED


def test_calibrate(tuning, channel, sensors):
    channel.send("C")
    result = tuning.poll()
    assert result.accepted
    assert sensors.calibrations == 1


def test_calibrate_failure_reported(tuning, channel, sensors):
    sensors.calibrate_ok = False
    channel.send("C")
    assert not tuning.poll().accepted
    assert channel.lines[-1].startswith("ERR")


def test_report_parameters(tuning, channel):
    channel.send("V")
    tuning.poll()
    assert channel.lines[-1] == "Kp=0.25 Ki=0 Kd=0 S=170 R=0 packets=12"


def test_help(tuning, channel):
    channel.send("?")
    tuning.poll()
    assert "P<kp>" in channel.lines[-1]
    assert "1-255" in channel.lines[-1]


def test_one_command_per_poll(tuning, channel, params):
    channel.send("P0.3 D2.5\n")
    tuning.poll()
    assert params.gains.kp == pytest.approx(0.3)
    assert params.gains.kd == 0.0
    tuning.poll()
    assert params.gains.kd == pytest.approx(2.5)
    assert tuning.poll() is None


def test_unknown_command_discards_buffer(tuning, channel, params):
    channel.send("X12 P0.9\n")
    result = tuning.poll()
    assert not result.accepted
    assert tuning.pending == ""
    assert channel.discards == 1
    assert tuning.poll() is None
    assert params.gains.kp == 0.25


def test_commands_are_case_sensitive(tuning, channel, params):
    channel.send("p0.9")
    assert not tuning.poll().accepted
    assert params.gains.kp == 0.25


def test_command_split_across_reads(tuning, channel, params):
    channel.send("  \n")
    assert tuning.poll() is None
    channel.send("S90")
    assert tuning.poll().accepted
    assert params.base_speed == 90


@pytest.mark.parametrize("cmd", ["P1.2.3", "P-", "S12.5", "R2"])
def test_malformed_argument_discards_remaining_input(tuning, channel, params, cmd):
    channel.send(cmd + " D5 S90\n")
    result = tuning.poll()
    assert not result.accepted
    assert channel.lines[-1].startswith("ERR")
    assert tuning.pending == ""
    assert channel.discards == 1
    assert tuning.poll() is None
    assert params.gains.kd == 0.0
    assert params.base_speed == 170
    assert params.run_state is RunState.STOPPED


def test_out_of_range_value_keeps_remaining_input(tuning, channel, params):
    channel.send("S300 D5\n")
    assert not tuning.poll().accepted
    assert channel.discards == 0
    assert tuning.poll().accepted
    assert params.gains.kd == 5.0
