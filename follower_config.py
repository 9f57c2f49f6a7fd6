"""follower_config.py - Fixed constants and live tuning parameters.

Two kinds of settings drive the line follower:

  FollowerConfig    Frozen constants chosen at start-up (sensor count,
                    thresholds, duty limits, recovery policy, timing, pins).
                    Defaults below; overridden by a JSON dotfile.
  ControllerParams  The live, operator-tunable values (Kp/Ki/Kd, base speed,
                    run state).  One instance is shared by reference between
                    the control loop and the tuning command parser.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum


_log = logging.getLogger("follower_config")

DEFAULT_CONFIG_FILE = ".follower_config.json"


class RunState(Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


# ──────────────────────────────────────────────
# Fixed constants
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class FollowerConfig:
    """Start-up constants.  Anything here can be set from the JSON file."""

    # ── Sensor array ──
    sensor_count: int = 5
    position_step: int = 1000         # weight between neighbouring channels
    line_polarity: str = "black"      # "black": line reads high after calibration, "white": line reads low
    noise_floor: int = 50             # calibrated readings at or below this are ignored
    min_signal: int = 100             # sum of readings below this → hold previous position
    detect_threshold: int = 200       # any channel above this → line (re)acquired
    lost_threshold: int = 120         # while tracking, lost only once every channel is at or below this
    sensor_raw_max: int = 1023        # raw ADC full scale before calibration
    sensor_stale_s: float = 0.1       # newest packet older than this → no sensor data

    # ── PID ──
    i_max: float = 4000.0             # integral anti-windup clamp

    # ── Motor mapping (duty units 0..max_duty) ──
    max_duty: int = 255
    min_effective: int = 40           # motors stall below this duty

    # ── Line-loss recovery ──
    search_speed: int = 120           # outer wheel duty while searching
    search_inner_ratio: float = 0.5   # inner wheel = search_speed × ratio (-1.0 = pure pivot)
    lost_timeout_s: float = 5.0       # line gone this long → drive stopped

    # ── Loop timing ──
    loop_period_s: float = 0.005
    telemetry_interval_s: float = 0.25

    # ── Calibration sweep ──
    calibration_iterations: int = 400
    calibration_step_s: float = 0.01
    calibration_speed: int = 110
    calibration_sweep_period: int = 50   # iterations per sweep direction

    # ── Start/stop button ──
    button_pin: int = 26
    button_debounce_s: float = 0.02

    # ── Motor pins (BCM) ──
    left_en: int = 12
    left_in1: int = 17
    left_in2: int = 27
    right_en: int = 13
    right_in3: int = 23
    right_in4: int = 22
    pwm_freq: int = 1000

    # ── Serial links ──
    sensor_port: str = "/dev/serial0"
    sensor_baudrate: int = 115200
    operator_port: str = ""          # empty → console channel
    operator_baudrate: int = 115200

    @property
    def setpoint(self):
        """Track-centre position: midpoint of [0, (N-1)·step]."""
        return (self.sensor_count - 1) * self.position_step / 2.0

    @property
    def max_position(self):
        return (self.sensor_count - 1) * self.position_step


# ──────────────────────────────────────────────
# Live tuning parameters
# ──────────────────────────────────────────────

@dataclass
class Gains:
    kp: float = 0.25
    ki: float = 0.0
    kd: float = 1.0


@dataclass
class ControllerParams:
    """Operator-tunable state read by the control loop every cycle."""

    gains: Gains = field(default_factory=Gains)
    base_speed: int = 170
    run_state: RunState = RunState.STOPPED

    @property
    def running(self):
        return self.run_state is RunState.RUNNING

    def describe(self):
        """One-line summary used by the `V` command and start-up log."""
        return (f"Kp={self.gains.kp:g} Ki={self.gains.ki:g} Kd={self.gains.kd:g} "
                f"S={self.base_speed} R={1 if self.running else 0}")


# ──────────────────────────────────────────────
# JSON loading
# ──────────────────────────────────────────────

def load_config(path=DEFAULT_CONFIG_FILE):
    """
    Build a FollowerConfig, overlaying values from a JSON file.

    The file is optional.  It may contain any FollowerConfig field at the
    top level, plus an optional ``"params"`` object with initial
    ``kp``/``ki``/``kd``/``base_speed``.
    Values of the wrong type, non-finite numbers and out-of-range params
    are logged and skipped; the default stays in place.

    Returns
    -------
    (FollowerConfig, ControllerParams)
    """
    config = FollowerConfig()
    params = ControllerParams()

    if not path or not os.path.exists(path):
        _log.info(f"⚙️  No config file at {path!r} - using defaults")
        return config, params

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        _log.warning(f"⚠️  Could not read config {path!r}: {e} - using defaults")
        return config, params

    if not isinstance(raw, dict):
        _log.warning(f"⚠️  Config {path!r} is not a JSON object - using defaults")
        return config, params

    known = {f.name for f in fields(FollowerConfig)}
    overrides = {}
    for key, value in raw.items():
        if key == "params":
            continue
        if key not in known:
            _log.warning(f"⚠️  Unknown config key {key!r} ignored")
            continue
        try:
            overrides[key] = _coerce(value, getattr(config, key))
        except (TypeError, ValueError) as e:
            _log.warning(f"⚠️  Config key {key!r} ignored: {e}")
    config = replace(config, **overrides)

    params = _params_from_json(raw.get("params", {}), config)

    _log.info(f"⚙️  Loaded config from {path} ({len(overrides)} overrides)")
    return config, params


def _coerce(value, default):
    """Check a JSON value against the type of the field's default."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise TypeError(f"unsupported value {value!r}")
    if isinstance(default, str):
        if not isinstance(value, str):
            raise TypeError(f"expected a string, got {value!r}")
        return value
    if isinstance(value, str):
        raise TypeError(f"expected a number, got {value!r}")
    if not math.isfinite(value):
        raise ValueError(f"expected a finite number, got {value!r}")
    if isinstance(default, int):
        if value != int(value):
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    return float(value)


def _params_from_json(obj, config):
    params = ControllerParams()
    if not isinstance(obj, dict):
        _log.warning(f"⚠️  'params' must be a JSON object, got {obj!r} - using defaults")
        return params

    for name in ("kp", "ki", "kd"):
        if name not in obj:
            continue
        try:
            value = float(obj[name])
        except (TypeError, ValueError):
            _log.warning(f"⚠️  {name}={obj[name]!r} in config is not a number - ignored")
            continue
        if not math.isfinite(value) or value < 0:
            _log.warning(f"⚠️  {name}={value} in config must be finite and >= 0 - ignored")
            continue
        setattr(params.gains, name, value)

    if "base_speed" in obj:
        try:
            speed = int(obj["base_speed"])
        except (TypeError, ValueError, OverflowError):
            _log.warning(f"⚠️  base_speed={obj['base_speed']!r} in config is not an integer - ignored")
            return params
        if 0 < speed <= config.max_duty:
            params.base_speed = speed
        else:
            _log.warning(f"⚠️  base_speed={speed} outside (0, {config.max_duty}] ignored")
    return params
