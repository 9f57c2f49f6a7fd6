"""line_follower.py - Position estimate, PID steering and line-loss recovery.

Per-cycle pipeline
──────────────────
  SensorFrame ─► PositionEstimator ─► PIDController ──┐
                                  └─► RecoveryPolicy ─┴─► MotorCommandMapper ─► motors

  TRACKING   Line visible.  error = setpoint − position → PID → duties.
  LOST       Line not visible.  PID bypassed; fixed search turn toward the
             side the line was last seen on.
  FATAL      Lost for longer than lost_timeout_s.  RunState forced to
             STOPPED; only an explicit run command resumes.

Sign convention
───────────────
  Channel 0 is the left-most sensor.  Position grows to the right, so
  error > 0 means the line is left of centre.  The mapper drives
  left = base − correction, right = base + correction, which turns the
  robot left for a positive correction, i.e. toward the line.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from follower_config import RunState


_log = logging.getLogger("line_follower")


@dataclass(frozen=True)
class SensorFrame:
    """One cycle of calibrated readings (0..1000 per channel)."""
    values: Tuple[int, ...]
    raw: Tuple[int, ...] = ()
    timestamp: float = 0.0
    valid: bool = True          # False when the sensor link has no data or it is stale


# ── Position Estimator ─────────────────────────────────

class PositionEstimator:
    """
    Weighted-average line position over the sensor array.

    Channel i contributes weight ``i × position_step``.  Readings at or
    below ``noise_floor`` are ignored.  When the remaining signal is below
    ``min_signal`` the previous position is returned unchanged, so a
    white-only frame never produces a jump to 0.

    ``peak`` keeps the strongest oriented reading of the last frame
    (0 for an invalid one) for the recovery policy's lost threshold.
    """

    def __init__(self, config):
        self._step = config.position_step
        self._max_position = config.max_position
        self._invert = config.line_polarity == "white"
        self._noise_floor = config.noise_floor
        self._min_signal = config.min_signal
        self._detect_threshold = config.detect_threshold
        self.peak = 0

    def normalize(self, frame):
        """Return readings oriented so that higher always means 'on the line'."""
        if self._invert:
            return [1000 - v for v in frame.values]
        return list(frame.values)

    def estimate(self, frame, previous_position):
        """
        Parameters
        ----------
        frame : SensorFrame
        previous_position : float
            Position returned on the previous cycle.

        Returns
        -------
        (float, bool)
            Position and line visibility.
        """
        if not frame.valid:
            self.peak = 0
            return previous_position, False

        readings = self.normalize(frame)
        self.peak = max(readings, default=0)
        visible = self.peak > self._detect_threshold

        weighted = 0
        total = 0
        for i, v in enumerate(readings):
            if v <= self._noise_floor:
                continue
            weighted += i * self._step * v
            total += v

        if total < self._min_signal:
            return previous_position, visible
        return min(self._max_position, max(0.0, weighted / total)), visible


# ── PID Controller ─────────────────────────────────────

class PIDController:
    """Discrete PID on position error with integral anti-windup."""

    def __init__(self, i_max):
        self.i_max = i_max
        self.reset()

    def reset(self):
        """Zero all internal state."""
        self.error = 0.0
        self.previous_error = 0.0
        self.integral = 0.0
        self.derivative = 0.0
        self.p_term = 0.0
        self.i_term = 0.0
        self.d_term = 0.0
        self.correction = 0.0
        self._primed = False

    def update(self, error, gains):
        """
        Compute one correction.

        The first call after reset() only stores the error, so integral
        and derivative contribute nothing on that cycle.
        """
        self.error = error
        if self._primed:
            self.integral = max(-self.i_max, min(self.i_max, self.integral + error))
            self.derivative = error - self.previous_error
        else:
            self.derivative = 0.0
            self._primed = True
        self.previous_error = error

        self.p_term = gains.kp * error
        self.i_term = gains.ki * self.integral
        self.d_term = gains.kd * self.derivative
        self.correction = self.p_term + self.i_term + self.d_term
        return self.correction


# ── Recovery Policy ────────────────────────────────────

class TrackState(Enum):
    TRACKING = "TRACKING"
    LOST = "LOST"


class RecoveryAction(Enum):
    TRACK = "TRACK"             # normal PID steering
    REACQUIRED = "REACQUIRED"   # line back; reset PID then steer
    SEARCH = "SEARCH"           # line lost; use search_duties()
    FATAL = "FATAL"             # lost past timeout; stop the drive


class RecoveryPolicy:
    """
    Tracking / lost state machine with a hard lost-line timeout.

    While LOST the robot arcs toward the side given by the sign of the
    last error computed before the loss.  ``search_inner_ratio`` sets the
    inner wheel relative to the outer one: 0.5 gives a search arc,
    0.0 pivots on the inner wheel, -1.0 spins in place.

    Visibility has hysteresis: once TRACKING, the line is only lost when
    the strongest reading falls to ``lost_threshold`` or below; once LOST,
    it takes a reading above ``detect_threshold`` to reacquire it.
    """

    def __init__(self, config, now=None):
        self.lost_timeout = config.lost_timeout_s
        self.lost_threshold = config.lost_threshold
        self.search_speed = config.search_speed
        self.inner_ratio = config.search_inner_ratio
        self.state = TrackState.TRACKING
        self.line_last_seen = time.monotonic() if now is None else now

    def reset(self, now):
        """Return to TRACKING and re-arm the timeout from *now*."""
        self.state = TrackState.TRACKING
        self.line_last_seen = now

    def update(self, visible, now, peak=None):
        """
        Parameters
        ----------
        visible : bool
            A reading is above the detect threshold this cycle.
        now : float
        peak : int, optional
            Strongest reading this cycle; while TRACKING, a peak above
            ``lost_threshold`` keeps the line held.
        """
        if not visible and self.state is TrackState.TRACKING and \
                peak is not None and peak > self.lost_threshold:
            visible = True

        if visible:
            self.line_last_seen = now
            if self.state is TrackState.LOST:
                self.state = TrackState.TRACKING
                _log.info("✅ Line reacquired")
                return RecoveryAction.REACQUIRED
            return RecoveryAction.TRACK

        if self.state is TrackState.TRACKING:
            self.state = TrackState.LOST
            _log.info("🔍 Line lost - searching")

        if now - self.line_last_seen > self.lost_timeout:
            return RecoveryAction.FATAL
        return RecoveryAction.SEARCH

    def search_duties(self, last_error):
        """
        Wheel duties for the search turn.

        last_error > 0 → line was left of centre → turn left
        (right wheel outer).  Otherwise turn right.
        """
        outer = self.search_speed
        inner = int(round(self.search_speed * self.inner_ratio))
        if last_error > 0:
            return inner, outer
        return outer, inner


# ── Motor Command Mapper ───────────────────────────────

class MotorCommandMapper:
    """Base speed ± correction → signed per-wheel duty."""

    def __init__(self, config):
        self.max_duty = config.max_duty
        self.min_effective = config.min_effective

    def shape(self, duty):
        """Apply the stall floor (keeping sign), then saturate."""
        duty = int(round(duty))
        if duty != 0 and abs(duty) < self.min_effective:
            duty = self.min_effective if duty > 0 else -self.min_effective
        return max(-self.max_duty, min(self.max_duty, duty))

    def map(self, base_speed, correction, run_state):
        if run_state is not RunState.RUNNING:
            return 0, 0
        left = self.shape(base_speed - correction)
        right = self.shape(base_speed + correction)
        return left, right


# ── Line Follower (one control cycle) ──────────────────

@dataclass
class CycleResult:
    """What one call to LineFollower.step() did (also the telemetry record)."""
    action: Optional[RecoveryAction]
    run_state: RunState
    position: float
    visible: bool
    error: float
    p_term: float = 0.0
    i_term: float = 0.0
    d_term: float = 0.0
    correction: float = 0.0
    left: int = 0
    right: int = 0
    raw: Tuple[int, ...] = field(default_factory=tuple)


class LineFollower:
    """
    Runs the estimator → PID/recovery → mapper pipeline once per step().

    Parameters
    ----------
    config : follower_config.FollowerConfig
    params : follower_config.ControllerParams
        Shared with the tuning interface; read fresh on every step.
    sensors : object
        Front end with ``read_frame()`` and ``calibrate()``.
    motors : object
        Driver with ``set_wheel_duty(wheel, duty)`` and ``stop_all()``.
    clock : callable
        Monotonic time source in seconds.
    """

    def __init__(self, config, params, sensors, motors, clock=time.monotonic):
        self.config = config
        self.params = params
        self._sensors = sensors
        self._motors = motors
        self._clock = clock

        self.estimator = PositionEstimator(config)
        self.pid = PIDController(config.i_max)
        self.recovery = RecoveryPolicy(config, now=clock())
        self.mapper = MotorCommandMapper(config)

        self.position = config.setpoint
        self.last_error = 0.0
        self.last_result = None
        self._last_telemetry = None

    # ── Run state ──────────────────────────────

    def start(self):
        """Stopped → Running.  Clears controller and re-arms the timeout."""
        self.rearm()
        self.params.run_state = RunState.RUNNING
        _log.info(f"🚀 Line following STARTED ({self.params.describe()})")

    def stop(self, reason="operator"):
        self.params.run_state = RunState.STOPPED
        self._motors.stop_all()
        _log.info(f"🛑 Line following STOPPED ({reason})")

    def set_running(self, running):
        if running and not self.params.running:
            self.start()
        elif running:
            self.rearm()
        else:
            self.stop()

    def rearm(self):
        """Reset PID and recovery state, e.g. after a start or a calibration."""
        self.pid.reset()
        self.recovery.reset(self._clock())
        self.last_error = 0.0

    def calibrate(self):
        """Blocking sensor calibration.  Motors are idle when it returns; run state is kept."""
        _log.info("🎯 Calibrating line sensors...")
        ok = self._sensors.calibrate()
        self._motors.stop_all()
        self.rearm()
        _log.info("🎯 Calibration done" if ok else "⚠️  Calibration failed")
        return ok

    # ── Control cycle ──────────────────────────

    def step(self, now=None):
        """Execute one control cycle and drive the motors."""
        if now is None:
            now = self._clock()

        frame = self._sensors.read_frame()
        self.position, visible = self.estimator.estimate(frame, self.position)
        error = self.config.setpoint - self.position

        if not self.params.running:
            self._motors.stop_all()
            result = CycleResult(None, RunState.STOPPED, self.position, visible,
                                 error, raw=frame.raw or frame.values)
            self.last_result = result
            return result

        action = self.recovery.update(visible, now, peak=self.estimator.peak)

        if action is RecoveryAction.FATAL:
            _log.warning(f"⛔ Line lost for more than {self.config.lost_timeout_s:.1f}s "
                         f"- stopping drive")
            self.stop(reason="line lost timeout")
            result = CycleResult(action, RunState.STOPPED, self.position, visible,
                                 error, raw=frame.raw or frame.values)
            self.last_result = result
            return result

        if action is RecoveryAction.SEARCH:
            left, right = self.recovery.search_duties(self.last_error)
            left, right = self.mapper.shape(left), self.mapper.shape(right)
            result = CycleResult(action, RunState.RUNNING, self.position, visible,
                                 self.last_error, left=left, right=right,
                                 raw=frame.raw or frame.values)
        else:
            if action is RecoveryAction.REACQUIRED:
                self.pid.reset()
            correction = self.pid.update(error, self.params.gains)
            self.last_error = error
            left, right = self.mapper.map(self.params.base_speed, correction,
                                          self.params.run_state)
            result = CycleResult(action, RunState.RUNNING, self.position, visible,
                                 error, self.pid.p_term, self.pid.i_term,
                                 self.pid.d_term, correction, left, right,
                                 raw=frame.raw or frame.values)

        self._motors.set_wheel_duty("left", left)
        self._motors.set_wheel_duty("right", right)
        self.last_result = result
        return result

    # ── Telemetry ──────────────────────────────

    def telemetry_due(self, now):
        """True once per telemetry_interval_s, independent of the loop rate."""
        if self._last_telemetry is None or \
                now - self._last_telemetry >= self.config.telemetry_interval_s:
            self._last_telemetry = now
            return True
        return False

    def telemetry_line(self):
        r = self.last_result
        if r is None:
            return "T no-data"
        state = r.action.value if r.action else "IDLE"
        raw = ",".join(str(v) for v in r.raw)
        return (f"T {state} {r.run_state.value} pos={r.position:.0f} "
                f"err={r.error:+.0f} P={r.p_term:+.1f} I={r.i_term:+.1f} "
                f"D={r.d_term:+.1f} corr={r.correction:+.1f} "
                f"L={r.left} R={r.right} raw=[{raw}]")
