"""Shared fakes for the line follower tests (no hardware, no serial)."""

import pytest

from follower_config import ControllerParams, FollowerConfig, Gains
from line_follower import LineFollower, SensorFrame


def frame_with_line(channel, count=5, level=1000):
    """Frame with *channel* on the line and every other channel on the floor."""
    values = [0] * count
    values[channel] = level
    return SensorFrame(values=tuple(values), raw=tuple(values))


def blank_frame(count=5):
    return SensorFrame(values=(0,) * count, raw=(0,) * count)


class FakeSensors:
    """Returns queued frames; repeats the last one when the queue runs dry."""

    def __init__(self, frames=None):
        self.frames = list(frames or [])
        self.last = blank_frame()
        self.calibrations = 0
        self.calibrate_ok = True

    def push(self, *frames):
        self.frames.extend(frames)

    def read_frame(self):
        if self.frames:
            self.last = self.frames.pop(0)
        return self.last

    def calibrate(self):
        self.calibrations += 1
        return self.calibrate_ok


class FakeMotors:
    def __init__(self):
        self.duty = {"left": 0, "right": 0}
        self.calls = []
        self.stops = 0

    def set_wheel_duty(self, wheel, duty):
        self.calls.append((wheel, duty))
        self.duty[wheel] = duty

    def stop_all(self):
        self.stops += 1
        self.duty = {"left": 0, "right": 0}


class FakeChannel:
    def __init__(self, text=""):
        self.buffer = text
        self.lines = []
        self.discards = 0

    def send(self, text):
        self.buffer += text

    def read_available(self):
        text, self.buffer = self.buffer, ""
        return text

    def discard_input(self):
        self.discards += 1
        self.buffer = ""

    def write_line(self, text):
        self.lines.append(text)

    def close(self):
        pass


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, dt):
        self.t += dt


@pytest.fixture
def config():
    return FollowerConfig()


@pytest.fixture
def params():
    return ControllerParams(gains=Gains(kp=0.25, ki=0.0, kd=0.0), base_speed=170)


@pytest.fixture
def sensors():
    return FakeSensors()


@pytest.fixture
def motors():
    return FakeMotors()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def follower(config, params, sensors, motors, clock):
    return LineFollower(config, params, sensors, motors, clock=clock)
