"""main.py - Line follower entry point and cooperative control loop.

Each pass of the loop, in order:
  1. at most one operator command (tuning channel)
  2. start/stop button (debounced)
  3. one control cycle: sensors → position → PID/recovery → motors
  4. telemetry, if its own interval has elapsed
then sleep out the rest of loop_period_s.  Everything runs on this one
thread; only the UART sensor reader has a background thread, and it just
publishes its latest packet.
"""

import argparse
import logging
import sys
import time
from dataclasses import replace

from follower_config import DEFAULT_CONFIG_FILE, load_config
from line_follower import LineFollower
from line_sensors import LineSensorArray, PicoLineSensorReader, StartButton
from motor import GPIO_AVAILABLE, MotorDriver
from tuning import ConsoleCommandChannel, SerialCommandChannel, TuningInterface


_log = logging.getLogger("main")

LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-5s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


# ==========================================
# 📝 LOGGING
# ==========================================

def setup_logging(log_file="line_follower.logs", verbose=False):
    """File log at DEBUG (telemetry included), console at INFO."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if log_file:
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        root.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(logging.DEBUG if verbose else logging.INFO)
    sh.setFormatter(logging.Formatter("%(asctime)s.%(msecs)03d | %(message)s",
                                      datefmt="%H:%M:%S"))
    root.addHandler(sh)


# ==========================================
# 🔁 CONTROL LOOP
# ==========================================

def run_loop(follower, tuning, channel, button=None, clock=time.monotonic,
             sleep=time.sleep, max_cycles=None):
    """
    Run the cooperative loop until interrupted (or max_cycles passes).

    Returns the number of passes executed.
    """
    period = follower.config.loop_period_s
    cycles = 0

    while max_cycles is None or cycles < max_cycles:
        started = clock()

        tuning.poll()

        if button is not None and button.poll():
            follower.set_running(not follower.params.running)

        now = clock()
        follower.step(now)

        if follower.telemetry_due(now):
            line = follower.telemetry_line()
            _log.debug(line)
            channel.write_line(line)

        cycles += 1
        remaining = period - (clock() - started)
        if remaining > 0:
            sleep(remaining)

    return cycles


# ==========================================
# 🚀 ENTRY POINT
# ==========================================

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="PID line follower with live tuning")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE,
                        help="Path to JSON config (default: %(default)s)")
    parser.add_argument("--sensor-port", help="UART the sensor Pico streams on")
    parser.add_argument("--operator-port",
                        help="Serial port for tuning commands (default: console)")
    parser.add_argument("--log-file", default="line_follower.logs",
                        help="Log file path, empty to disable (default: %(default)s)")
    parser.add_argument("--no-calibrate", action="store_true",
                        help="Skip the start-up calibration sweep")
    parser.add_argument("--autostart", action="store_true",
                        help="Start following immediately instead of waiting for R1")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Show DEBUG output (telemetry) on the console")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_file, args.verbose)

    config, params = load_config(args.config)
    overrides = {}
    if args.sensor_port:
        overrides["sensor_port"] = args.sensor_port
    if args.operator_port:
        overrides["operator_port"] = args.operator_port
    config = replace(config, **overrides)

    _log.info("=" * 60)
    _log.info("  LINE FOLLOWER")
    _log.info(f"  GPIO: {'RPi.GPIO' if GPIO_AVAILABLE else 'MOCK'} | "
              f"sensors: {config.sensor_port} | "
              f"operator: {config.operator_port or 'console'}")
    _log.info("=" * 60)

    motors = MotorDriver(config)
    reader = PicoLineSensorReader(config.sensor_port, config.sensor_baudrate)
    sensors = LineSensorArray(reader, config, motors=motors)
    follower = LineFollower(config, params, sensors, motors)

    if config.operator_port:
        channel = SerialCommandChannel(config.operator_port, config.operator_baudrate)
    else:
        channel = ConsoleCommandChannel()
    tuning = TuningInterface(follower, channel, stats=reader.get_stats)
    button = StartButton(config.button_pin, config.button_debounce_s) if GPIO_AVAILABLE else None

    try:
        if not args.no_calibrate:
            follower.calibrate()
        if args.autostart:
            follower.start()
        _log.info(f"⚙️  {params.describe()} - send ? for help")
        run_loop(follower, tuning, channel, button)
    except KeyboardInterrupt:
        _log.info("⌨️  Interrupted")
    finally:
        motors.stop_all()
        reader.close()
        channel.close()
        motors.cleanup()
        _log.info("👋 Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
