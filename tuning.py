"""tuning.py - Live operator commands over serial or the console.

Command format: one case-sensitive character, optionally followed by a
number that runs until the first non-numeric character.  Whitespace and
newlines between commands are skipped, so "P0.3 D2.5\\n" is two commands.

  P<float>   set Kp (≥ 0)
  I<float>   set Ki (≥ 0)
  D<float>   set Kd (≥ 0)
  S<int>     set base speed, 0 < S ≤ max duty
  R<0|1>     stop / start (no argument toggles)
  C          recalibrate sensors (blocks the control loop)
  V          report current parameters
  ?          help

An unknown leading character or an unparseable argument (P1.2.3, S12.5,
R2) throws away everything still buffered.  Out-of-range values leave the
parameter unchanged and answer "ERR ..." without touching the buffer.
"""

import logging
import math
import select
import sys
from dataclasses import dataclass

import serial


_log = logging.getLogger("tuning")

NUMERIC_CHARS = set("+-.0123456789")

HELP_TEXT = (
    "Commands: P<kp> I<ki> D<kd> S<speed 1-{max}> R<0|1> C=calibrate "
    "V=values ?=help"
)


@dataclass
class CommandResult:
    command: str
    accepted: bool
    message: str


# ── Operator channels ──────────────────────────────────

class SerialCommandChannel:
    """Operator link over a serial port (USB adapter, Bluetooth SPP, ...)."""

    def __init__(self, port, baudrate=115200):
        self.port = port
        self._serial = None
        try:
            self._serial = serial.Serial(port, baudrate, timeout=0)
            _log.info(f"✅ Operator channel on {port} @ {baudrate} baud")
        except (serial.SerialException, OSError) as e:
            _log.warning(f"❌ Operator port {port} unavailable: {e}")

    def read_available(self):
        if self._serial is None:
            return ""
        try:
            waiting = self._serial.in_waiting
            if not waiting:
                return ""
            return self._serial.read(waiting).decode(errors='replace')
        except (serial.SerialException, OSError) as e:
            _log.warning(f"⚠️  Operator read error: {e}")
            return ""

    def discard_input(self):
        if self._serial is None:
            return
        try:
            self._serial.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            _log.warning(f"⚠️  Operator flush error: {e}")

    def write_line(self, text):
        if self._serial is None:
            return
        try:
            self._serial.write((text + "\r\n").encode())
        except (serial.SerialException, OSError) as e:
            _log.warning(f"⚠️  Operator write error: {e}")

    def close(self):
        if self._serial is not None:
            self._serial.close()


class ConsoleCommandChannel:
    """Operator link on stdin/stdout for bench testing (POSIX only)."""

    def __init__(self, stream_in=None, stream_out=None):
        self._in = stream_in or sys.stdin
        self._out = stream_out or sys.stdout

    def read_available(self):
        ready, _, _ = select.select([self._in], [], [], 0)
        if not ready:
            return ""
        return self._in.readline()

    def discard_input(self):
        while select.select([self._in], [], [], 0)[0]:
            if not self._in.readline():
                break

    def write_line(self, text):
        self._out.write(text + "\n")
        self._out.flush()

    def close(self):
        pass


# ── Command parser ─────────────────────────────────────

class TuningInterface:
    """
    Applies operator commands to the shared ControllerParams.

    Parameters
    ----------
    follower : line_follower.LineFollower
        Owns params, run state and calibration.
    channel : object
        ``read_available()``, ``discard_input()``, ``write_line(text)``.
    stats : callable, optional
        Returns a dict appended to the `V` report (e.g. sensor link counters).
    """

    def __init__(self, follower, channel, stats=None):
        self._follower = follower
        self._params = follower.params
        self._max_duty = follower.config.max_duty
        self._channel = channel
        self._stats = stats
        self._pending = ""

        self._handlers = {
            'P': self._set_kp,
            'I': self._set_ki,
            'D': self._set_kd,
            'S': self._set_speed,
            'R': self._set_run,
            'C': self._calibrate,
            'V': self._report,
            '?': self._help,
        }

    @property
    def pending(self):
        return self._pending

    def poll(self):
        """Read whatever arrived and execute at most one command."""
        self._pending += self._channel.read_available()
        result = self.process_next()
        if result is not None:
            self._channel.write_line(result.message)
        return result

    def process_next(self):
        """Execute the next command in the pending buffer, if any."""
        buf = self._pending.lstrip()
        if not buf:
            self._pending = ""
            return None

        cmd = buf[0]
        handler = self._handlers.get(cmd)
        if handler is None:
            self._discard(f"unknown command {cmd!r}")
            return CommandResult(cmd, False, f"ERR unknown command {cmd!r}")

        end = 1
        while end < len(buf) and buf[end] in NUMERIC_CHARS:
            end += 1
        arg = buf[1:end]
        self._pending = buf[end:]

        result = handler(arg)
        level = logging.INFO if result.accepted else logging.WARNING
        _log.log(level, f"🎛️  {cmd}{arg} → {result.message}")
        return result

    def _discard(self, reason):
        """Drop everything buffered here and on the channel."""
        _log.info(f"❓ {reason} - discarding {len(self._pending)} buffered chars")
        self._pending = ""
        self._channel.discard_input()

    def _malformed(self, cmd, arg, message):
        """Reject an unparseable argument; the rest of the input goes with it."""
        self._discard(f"malformed {cmd}{arg}")
        return CommandResult(cmd, False, message)

    # ── Handlers ───────────────────────────────

    @staticmethod
    def _parse_float(arg):
        try:
            value = float(arg)
        except ValueError:
            return None
        return value if math.isfinite(value) else None

    def _set_gain(self, cmd, name, arg):
        value = self._parse_float(arg)
        if value is None:
            return self._malformed(cmd, arg, f"ERR {cmd} needs a number")
        if value < 0:
            return CommandResult(cmd, False, f"ERR {name} must be >= 0 (kept {getattr(self._params.gains, name):g})")
        setattr(self._params.gains, name, value)
        return CommandResult(cmd, True, f"OK {name}={value:g}")

    def _set_kp(self, arg):
        return self._set_gain('P', 'kp', arg)

    def _set_ki(self, arg):
        return self._set_gain('I', 'ki', arg)

    def _set_kd(self, arg):
        return self._set_gain('D', 'kd', arg)

    def _set_speed(self, arg):
        value = self._parse_float(arg)
        if value is None or value != int(value):
            return self._malformed('S', arg, "ERR S needs an integer")
        value = int(value)
        if not 0 < value <= self._max_duty:
            return CommandResult('S', False, f"ERR speed must be in (0, {self._max_duty}] "
                                             f"(kept {self._params.base_speed})")
        self._params.base_speed = value
        return CommandResult('S', True, f"OK speed={value}")

    def _set_run(self, arg):
        if arg == "":
            running = not self._params.running
        elif arg in ("0", "1"):
            running = arg == "1"
        else:
            return self._malformed('R', arg, "ERR R takes 0 or 1")
        self._follower.set_running(running)
        return CommandResult('R', True, f"OK run={1 if running else 0}")

    def _calibrate(self, arg):
        if not self._follower.calibrate():
            return CommandResult('C', False, "ERR calibration saw no sensor data")
        return CommandResult('C', True, "OK calibrated")

    def _report(self, arg):
        text = self._params.describe()
        if self._stats is not None:
            text += " " + " ".join(f"{k}={v}" for k, v in self._stats().items())
        return CommandResult('V', True, text)

    def _help(self, arg):
        return CommandResult('?', True, HELP_TEXT.format(max=self._max_duty))
