from follower_config import RunState
from main import parse_args, run_loop
from tuning import TuningInterface
from conftest import FakeChannel, frame_with_line


class PressOnce:
    def __init__(self):
        self.polls = 0

    def poll(self):
        self.polls += 1
        return self.polls == 2


def test_loop_processes_command_then_drives(follower, sensors, motors, clock, params):
    channel = FakeChannel("R1")
    tuning = TuningInterface(follower, channel)
    sensors.push(frame_with_line(2))
    sleeps = []

    cycles = run_loop(follower, tuning, channel, clock=clock, sleep=sleeps.append,
                      max_cycles=3)

    assert cycles == 3
    assert params.run_state is RunState.RUNNING
    assert motors.duty == {"left": 170, "right": 170}
    assert channel.lines[0] == "OK run=1"
    # telemetry once: the fake clock never advances past the interval
    assert sum(1 for line in channel.lines if line.startswith("T ")) == 1
    assert sleeps == [follower.config.loop_period_s] * 3


def test_button_toggles_run_state(follower, clock, params):
    channel = FakeChannel()
    tuning = TuningInterface(follower, channel)
    button = PressOnce()
    run_loop(follower, tuning, channel, button=button, clock=clock,
             sleep=lambda s: None, max_cycles=3)
    assert params.run_state is RunState.RUNNING


def test_parse_args_defaults():
    args = parse_args([])
    assert args.config == ".follower_config.json"
    assert args.operator_port is None
    assert not args.autostart
