"""motor.py - MotorDriver: two-wheel L298N drive for the line follower.

One L298N driver, two DC motors:
  Left  wheel   ENA (PWM) + IN1/IN2 direction
  Right wheel   ENB (PWM) + IN3/IN4 direction

API used by the control loop:
  - set_wheel_duty("left"|"right", duty)   Signed duty −255..+255
  - stop_all()                              PWM → 0, pins LOW (coast)
  - cleanup()                               Release GPIO resources

Off the Pi (no /proc/device-tree/model) every GPIO call goes to an
in-process mock that records pin levels and PWM duty, so the whole
program runs on a laptop.
"""

import logging
import os


_log = logging.getLogger("motor")

LEFT = "left"
RIGHT = "right"


# ──────────────────────────────────────────────
# GPIO abstraction (real RPi.GPIO or mock)
# ──────────────────────────────────────────────

class MockGPIO:
    """Fake GPIO for off-Pi testing."""
    BCM = "BCM"
    IN = "IN"
    OUT = "OUT"
    PUD_UP = "PUD_UP"

    class _MockPWM:
        def __init__(self, pin, freq):
            self.pin = pin
            self.freq = freq
            self.duty = 0.0
            self.running = False

        def start(self, val):
            self.duty = val
            self.running = True

        def stop(self):
            self.running = False

        def ChangeDutyCycle(self, val):
            self.duty = val


class GPIOWrapper:
    """Thin wrapper: routes to real GPIO when available, mock otherwise."""

    def __init__(self, real_gpio=None):
        self.real_gpio = real_gpio
        self.pin_states = {}
        self._mode = None
        consts = real_gpio or MockGPIO
        self.BCM = consts.BCM
        self.IN = consts.IN
        self.OUT = consts.OUT
        self.PUD_UP = consts.PUD_UP

    def setmode(self, mode):
        self._mode = mode
        if self.real_gpio:
            self.real_gpio.setmode(mode)

    def getmode(self):
        if self.real_gpio:
            return self.real_gpio.getmode()
        return self._mode

    def setwarnings(self, val):
        if self.real_gpio:
            self.real_gpio.setwarnings(val)

    def setup(self, pins, mode, pull_up_down=None):
        if self.real_gpio:
            if pull_up_down is None:
                self.real_gpio.setup(pins, mode)
            else:
                self.real_gpio.setup(pins, mode, pull_up_down=pull_up_down)

    def input(self, pin):
        if pin in self.pin_states:
            return self.pin_states[pin]
        if self.real_gpio:
            return self.real_gpio.input(pin)
        return 1

    def output(self, pins, state):
        if not isinstance(pins, (list, tuple)):
            pins = [pins]
        for p in pins:
            self.pin_states[p] = 1 if state else 0
        if self.real_gpio:
            self.real_gpio.output(pins, state)

    def cleanup(self):
        if self.real_gpio:
            self.real_gpio.cleanup()

    def PWM(self, pin, freq):
        if self.real_gpio:
            return self.real_gpio.PWM(pin, freq)
        return MockGPIO._MockPWM(pin, freq)

    def set_pin(self, pin, value):
        self.pin_states[pin] = value


# ──────────────────────────────────────────────
# Detect hardware
# ──────────────────────────────────────────────

GPIO_AVAILABLE = False
real_gpio = None

if os.path.exists('/proc/device-tree/model'):
    try:
        import RPi.GPIO as real_gpio
    except (ImportError, RuntimeError) as e:
        _log.warning(f"⚠️  GPIO import failed: {e}")
        real_gpio = None

GPIO = GPIOWrapper(real_gpio)

if real_gpio:
    try:
        GPIO.setmode(GPIO.BCM)
        GPIO.setwarnings(False)
        GPIO_AVAILABLE = True
    except RuntimeError as e:
        _log.warning(f"⚠️  GPIO initialization failed: {e}")
else:
    _log.info("RPi.GPIO not available - motors run in MOCK mode")


# ──────────────────────────────────────────────
# MotorDriver
# ──────────────────────────────────────────────

class MotorDriver:
    """
    Signed duty-cycle interface to a dual H-bridge.

    Direction convention:
        Forward  → IN_A=HIGH, IN_B=LOW
        Reverse  → IN_A=LOW,  IN_B=HIGH
        Coast    → IN_A=LOW,  IN_B=LOW   (+ 0 % PWM)

    Duty is given in 0..max_duty units (255 by default) and converted to
    the 0-100 % duty cycle RPi.GPIO expects.

    Parameters
    ----------
    config : follower_config.FollowerConfig
        Supplies pins, PWM frequency and max_duty.
    gpio : GPIOWrapper, optional
        Defaults to the module-level wrapper.
    """

    def __init__(self, config, gpio=None):
        self._gpio = gpio if gpio is not None else GPIO
        self.max_duty = config.max_duty
        self._pins = {
            LEFT: (config.left_in1, config.left_in2),
            RIGHT: (config.right_in3, config.right_in4),
        }
        self.all_dir_pins = [config.left_in1, config.left_in2,
                             config.right_in3, config.right_in4]

        if self._gpio.getmode() is None:
            self._gpio.setmode(self._gpio.BCM)
            self._gpio.setwarnings(False)

        self._gpio.setup(self.all_dir_pins + [config.left_en, config.right_en],
                         self._gpio.OUT)

        self._pwm = {
            LEFT: self._gpio.PWM(config.left_en, config.pwm_freq),
            RIGHT: self._gpio.PWM(config.right_en, config.pwm_freq),
        }
        for pwm in self._pwm.values():
            pwm.start(0)

        # Last applied signed duty per wheel (telemetry + direction tracking)
        self.duty = {LEFT: 0, RIGHT: 0}

    # ── public API ──────────────────────────────

    def set_wheel_duty(self, wheel, duty):
        """
        Drive *wheel* at signed *duty*.

        Sign selects the direction pin pair, magnitude the PWM duty.
        Magnitudes above max_duty are clipped.
        """
        if wheel not in self._pwm:
            raise ValueError(f"Unknown wheel {wheel!r} (expected 'left' or 'right')")

        duty = int(max(-self.max_duty, min(self.max_duty, duty)))
        previous = self.duty[wheel]
        in_a, in_b = self._pins[wheel]
        pwm = self._pwm[wheel]

        # Cut power before flipping the H-bridge to avoid shoot-through
        if previous != 0 and duty != 0 and (previous > 0) != (duty > 0):
            pwm.ChangeDutyCycle(0)

        if duty > 0:
            self._gpio.output(in_b, False)
            self._gpio.output(in_a, True)
        elif duty < 0:
            self._gpio.output(in_a, False)
            self._gpio.output(in_b, True)
        else:
            self._gpio.output([in_a, in_b], False)

        pwm.ChangeDutyCycle(abs(duty) * 100.0 / self.max_duty)
        self.duty[wheel] = duty

    def stop_all(self):
        """Gentle stop: PWM → 0, direction pins LOW (coast)."""
        for pwm in self._pwm.values():
            pwm.ChangeDutyCycle(0)
        self._gpio.output(self.all_dir_pins, False)
        self.duty = {LEFT: 0, RIGHT: 0}

    def cleanup(self):
        """Release PWM and GPIO resources."""
        self.stop_all()
        for pwm in self._pwm.values():
            pwm.stop()
        self._gpio.cleanup()
