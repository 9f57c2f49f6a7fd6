"""line_sensors.py - Reflectance array front end + start/stop button.

Hardware
────────
  Pico (UART)      Samples the N reflectance channels and streams one JSON
                   packet per line:  {"ts": 1234, "frame": 57, "ir": [812, 640, 95, 80, 77]}
  Start button     GPIO 26, active LOW (internal pull-up)

The Pi side never touches the sensor ADCs itself.  PicoLineSensorReader keeps
the latest packet; LineSensorArray turns it into a calibrated SensorFrame
(0..1000 per channel, 1000 = darkest value seen during calibration).
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Tuple

import serial

from line_follower import SensorFrame
from motor import GPIO, LEFT, RIGHT


_log = logging.getLogger("line_sensors")


@dataclass
class LineSensorPacket:
    """Parsed reflectance data from the Pico."""
    timestamp_ms: int
    frame: int
    readings: Tuple[int, ...]
    received: float = 0.0       # Pi-side monotonic arrival time


def parse_packet(line):
    """
    Parse one JSON line from the Pico.

    Returns
    -------
    LineSensorPacket or None
        None when the line is not a sensor packet.

    Raises
    ------
    ValueError
        Malformed JSON or a packet without a usable ``ir`` array.
    TypeError, OverflowError
        A reading that is not a finite number.
    """
    if not line.startswith('{'):
        return None
    raw = json.loads(line)
    ir = raw.get('ir')
    if not isinstance(ir, list) or not ir:
        raise ValueError("packet has no 'ir' readings")
    return LineSensorPacket(
        timestamp_ms=int(raw.get('ts', 0)),
        frame=int(raw.get('frame', 0)),
        readings=tuple(int(v) for v in ir),
    )


# ── UART reader ────────────────────────────────────────

class PicoLineSensorReader:
    """
    Reads JSON reflectance packets from the Pico over UART.
    Provides thread-safe access to the latest packet.
    """

    def __init__(self, port='/dev/serial0', baudrate=115200,
                 connect=True, clock=time.monotonic):
        """
        Parameters
        ----------
        port : str
            Serial port (default /dev/serial0)
        baudrate : int
            Baud rate (default 115200)
        connect : bool
            Open the port and start the read thread immediately.
        clock : callable
            Monotonic time source used to stamp arriving packets.
        """
        self.port = port
        self._clock = clock
        self.baudrate = baudrate
        self._serial = None
        self._last_packet = None
        self._lock = threading.Lock()
        self._running = False
        self._error_count = 0
        self._packet_count = 0
        self._read_thread = None

        if connect:
            self._connect()

    def _connect(self):
        """Attempt to establish serial connection."""
        try:
            self._serial = serial.Serial(self.port, self.baudrate, timeout=0.1)
        except (serial.SerialException, OSError) as e:
            _log.warning(f"❌ Line sensor port {self.port} unavailable: {e}")
            self._running = False
            return

        _log.info(f"✅ Line sensor reader connected: {self.port} @ {self.baudrate} baud")
        self._running = True
        self._read_thread = threading.Thread(target=self._read_loop, daemon=True)
        self._read_thread.start()

    def _read_loop(self):
        """Background thread: continuously read and parse JSON packets."""
        while self._running and self._serial:
            try:
                line = self._serial.readline().decode(errors='replace').strip()
                if line:
                    self.feed(line)
            except Exception as e:
                with self._lock:
                    self._error_count += 1
                _log.warning(f"⚠️  Line sensor read error: {e}")
                time.sleep(0.01)

    def feed(self, line):
        """Parse one line and publish it as the latest packet."""
        try:
            packet = parse_packet(line)
        except (ValueError, TypeError, OverflowError) as e:
            with self._lock:
                self._error_count += 1
            _log.debug(f"⚠️  Parse error: {e} | Data: {line[:60]}")
            return None

        if packet is None:
            return None
        packet.received = self._clock()
        with self._lock:
            self._last_packet = packet
            self._packet_count += 1
        return packet

    def get_latest(self):
        """
        Get the most recent sensor packet.

        Returns
        -------
        LineSensorPacket or None
            Latest packet, or None if not yet received
        """
        with self._lock:
            return self._last_packet

    def get_stats(self):
        with self._lock:
            return {
                "packets_received": self._packet_count,
                "errors": self._error_count,
                "connected": self._running,
            }

    def close(self):
        """Shutdown reader and close serial port."""
        self._running = False
        if self._read_thread:
            self._read_thread.join(timeout=1.0)
        if self._serial:
            self._serial.close()
        _log.info("🛑 Line sensor reader closed")


# ── Calibrated array ───────────────────────────────────

class LineSensorArray:
    """
    Calibrated view of the reflectance array.

    Parameters
    ----------
    reader : PicoLineSensorReader
        Source of raw packets (anything with ``get_latest()``).
    config : follower_config.FollowerConfig
    motors : motor.MotorDriver, optional
        Swept left/right during calibration so every channel sees both
        the line and the floor.  Without motors, calibration just samples.
    sleep : callable
        Delay between calibration samples.
    clock : callable
        Monotonic time source; must match the reader's packet stamps.
    """

    def __init__(self, reader, config, motors=None, sleep=time.sleep,
                 clock=time.monotonic):
        self._reader = reader
        self._motors = motors
        self._sleep = sleep
        self._clock = clock
        self.count = config.sensor_count
        self.raw_max = config.sensor_raw_max
        self.stale_s = config.sensor_stale_s
        self.iterations = config.calibration_iterations
        self.step_s = config.calibration_step_s
        self.sweep_speed = config.calibration_speed
        self.sweep_period = max(1, config.calibration_sweep_period)

        # Uncalibrated: assume the full ADC range
        self.cal_min = [0] * self.count
        self.cal_max = [self.raw_max] * self.count
        self.calibrated = False

    def read_raw(self):
        """
        Latest raw readings, or None when no usable packet is available.

        A packet older than ``sensor_stale_s`` counts as missing, so a
        silent Pico reads as "no line" and the lost-line timeout can fire.
        """
        packet = self._reader.get_latest()
        if packet is None or len(packet.readings) != self.count:
            return None
        if self._clock() - packet.received > self.stale_s:
            return None
        return packet.readings

    def calibrate(self):
        """
        Sweep the robot over the line and record per-channel min/max.

        Runs exactly ``calibration_iterations`` samples; the motors are
        stopped afterwards.
        """
        lo = [self.raw_max] * self.count
        hi = [0] * self.count
        samples = 0

        for i in range(self.iterations):
            if self._motors is not None:
                # Sweep pattern: ¼ right, ½ left, ¼ right, repeated
                phase = (i // self.sweep_period) % 4
                direction = 1 if phase in (0, 3) else -1
                self._motors.set_wheel_duty(LEFT, direction * self.sweep_speed)
                self._motors.set_wheel_duty(RIGHT, -direction * self.sweep_speed)

            raw = self.read_raw()
            if raw is not None:
                samples += 1
                for ch, v in enumerate(raw):
                    if v < lo[ch]:
                        lo[ch] = v
                    if v > hi[ch]:
                        hi[ch] = v
            self._sleep(self.step_s)

        if self._motors is not None:
            self._motors.stop_all()

        if samples == 0:
            _log.warning("⚠️  Calibration saw no sensor packets - keeping previous limits")
            return False

        self.cal_min = lo
        self.cal_max = hi
        self.calibrated = True
        _log.info(f"🎯 Calibrated {samples} samples | min={lo} max={hi}")
        return True

    def normalize(self, raw):
        """Map raw readings into 0..1000 using the calibration limits."""
        out = []
        for ch, v in enumerate(raw):
            span = self.cal_max[ch] - self.cal_min[ch]
            if span <= 0:
                out.append(0)
                continue
            x = (v - self.cal_min[ch]) * 1000 // span
            out.append(max(0, min(1000, x)))
        return tuple(out)

    def read_frame(self):
        raw = self.read_raw()
        if raw is None:
            return SensorFrame(values=(0,) * self.count, raw=(), valid=False,
                               timestamp=self._clock())
        return SensorFrame(values=self.normalize(raw), raw=tuple(raw),
                           timestamp=self._clock())


# ── Start/stop button ──────────────────────────────────

class StartButton:
    """
    Debounced active-LOW push button.

    poll() returns True once per press: the pin must read LOW, still read
    LOW after ``debounce_s``, and have been HIGH on the previous poll.
    """

    def __init__(self, pin, debounce_s=0.02, gpio=None, sleep=time.sleep):
        self._gpio = gpio if gpio is not None else GPIO
        self.pin = pin
        self.debounce_s = debounce_s
        self._sleep = sleep
        self._was_pressed = False
        self._gpio.setup(pin, self._gpio.IN, pull_up_down=self._gpio.PUD_UP)

    def poll(self):
        pressed = self._gpio.input(self.pin) == 0
        if not pressed:
            self._was_pressed = False
            return False
        if self._was_pressed:
            return False

        self._sleep(self.debounce_s)
        if self._gpio.input(self.pin) != 0:
            return False
        self._was_pressed = True
        return True
