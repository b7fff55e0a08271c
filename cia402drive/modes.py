"""Operation mode handlers that translate targets into drive objects."""

from __future__ import annotations

import abc
import enum
import logging
import math
import threading
import time
from typing import ClassVar, Optional

from .objects import ObjectStorage
from .state402 import ControlWord, StatusWord, WordAccessor
from .status import LayerStatus

log = logging.getLogger(__name__)

_MODE_NONE = 0
_MODE_PROFILED_POSITION = 1
_MODE_VELOCITY = 2
_MODE_PROFILED_VELOCITY = 3
_MODE_PROFILED_TORQUE = 4
_MODE_HOMING = 6
_MODE_INTERPOLATED_POSITION = 7
_MODE_CYCLIC_SYNCHRONOUS_POSITION = 8
_MODE_CYCLIC_SYNCHRONOUS_VELOCITY = 9
_MODE_CYCLIC_SYNCHRONOUS_TORQUE = 10


class IntType(enum.Enum):
    """Fixed-width integer types a target value can be stored as."""

    UINT8 = (8, False)
    INT8 = (8, True)
    UINT16 = (16, False)
    INT16 = (16, True)
    UINT32 = (32, False)
    INT32 = (32, True)
    UINT64 = (64, False)
    INT64 = (64, True)

    @property
    def bits(self) -> int:
        return self.value[0]

    @property
    def signed(self) -> bool:
        return self.value[1]

    @property
    def min(self) -> int:
        return -(1 << (self.bits - 1)) if self.signed else 0

    @property
    def max(self) -> int:
        return (1 << (self.bits - 1)) - 1 if self.signed else (1 << self.bits) - 1


class Mode(abc.ABC):
    """Base of all operation mode handlers."""

    def __init__(self, mode_id: int) -> None:
        self._mode_id = mode_id

    @property
    def mode_id(self) -> int:
        return self._mode_id

    @abc.abstractmethod
    def start(self) -> bool:
        """Prepare the mode for use; return whether it is ready."""

    @abc.abstractmethod
    def read(self, sw: int) -> bool:
        """Consume a status word; return False on a mode error."""

    @abc.abstractmethod
    def write(self, cw: WordAccessor) -> bool:
        """Update the operation-mode bits of the control word.

        Returns True if the drive should not be halted.
        """

    def set_target(self, value: float) -> bool:
        """Accept a new target; modes without targets refuse it."""
        log.error("Mode.set_target not implemented")
        return False


class ModeTargetHelper(Mode):
    """A mode holding one integer target, clamped to the range of its type."""

    def __init__(self, mode_id: int, int_type: IntType) -> None:
        super().__init__(mode_id)
        self.int_type = int_type
        self._target = 0
        self._has_target = False
        self._lock = threading.Lock()

    def has_target(self) -> bool:
        with self._lock:
            return self._has_target

    def get_target(self) -> int:
        with self._lock:
            return self._target

    def set_target(self, value: float) -> bool:
        """Store ``value`` truncated towards zero, clamped to the type range."""
        try:
            number = float(value)
        except (TypeError, ValueError):
            log.error("Was not able to cast command %r", value)
            return False
        if math.isnan(number):
            log.error("target command is not a number")
            return False

        low, high = self.int_type.min, self.int_type.max
        if number >= high + 1:
            log.warning(
                "Command %s does not fit into target, clamping to max limit", value
            )
            target = high
        elif number <= low - 1:
            log.warning(
                "Command %s does not fit into target, clamping to min limit", value
            )
            target = low
        else:
            target = int(number)

        with self._lock:
            self._target = target
            self._has_target = True
        return True

    def start(self) -> bool:
        with self._lock:
            self._has_target = False
        return True


class ModeForwardHelper(ModeTargetHelper):
    """A mode that forwards its target to a single object dictionary entry.

    Subclasses set the mode id, value type, object address and the control
    word bits to raise while a target is present.
    """

    MODE_ID: ClassVar[int]
    TYPE: ClassVar[IntType]
    INDEX: ClassVar[int]
    SUBINDEX: ClassVar[int] = 0
    CW_MASK: ClassVar[int] = 0

    def __init__(self, storage: ObjectStorage) -> None:
        super().__init__(self.MODE_ID, self.TYPE)
        self._target_entry = storage.entry(self.INDEX, self.SUBINDEX)

    def read(self, sw: int) -> bool:
        return True

    def write(self, cw: WordAccessor) -> bool:
        if self.has_target():
            cw.assign(cw.masked() | self.CW_MASK)
            self._target_entry.set(self.get_target())
            return True
        cw.assign(cw.masked() & ~self.CW_MASK)
        return False


def _bits(*positions: int) -> int:
    value = 0
    for bit in positions:
        value |= 1 << bit
    return value


class ProfiledVelocityMode(ModeForwardHelper):
    MODE_ID = _MODE_PROFILED_VELOCITY
    TYPE = IntType.INT32
    INDEX = 0x60FF


class ProfiledTorqueMode(ModeForwardHelper):
    MODE_ID = _MODE_PROFILED_TORQUE
    TYPE = IntType.INT16
    INDEX = 0x6071


class CyclicSynchronousPositionMode(ModeForwardHelper):
    MODE_ID = _MODE_CYCLIC_SYNCHRONOUS_POSITION
    TYPE = IntType.INT32
    INDEX = 0x607A


class CyclicSynchronousVelocityMode(ModeForwardHelper):
    MODE_ID = _MODE_CYCLIC_SYNCHRONOUS_VELOCITY
    TYPE = IntType.INT32
    INDEX = 0x60FF


class CyclicSynchronousTorqueMode(ModeForwardHelper):
    MODE_ID = _MODE_CYCLIC_SYNCHRONOUS_TORQUE
    TYPE = IntType.INT16
    INDEX = 0x6071


class VelocityMode(ModeForwardHelper):
    MODE_ID = _MODE_VELOCITY
    TYPE = IntType.INT16
    INDEX = 0x6042
    CW_MASK = _bits(
        ControlWord.OPERATION_MODE_SPECIFIC0,
        ControlWord.OPERATION_MODE_SPECIFIC1,
        ControlWord.OPERATION_MODE_SPECIFIC2,
    )


class InterpolatedPositionMode(ModeForwardHelper):
    MODE_ID = _MODE_INTERPOLATED_POSITION
    TYPE = IntType.INT32
    INDEX = 0x60C1
    SUBINDEX = 0x01
    CW_MASK = _bits(ControlWord.OPERATION_MODE_SPECIFIC0)


class ProfiledPositionMode(ModeTargetHelper):
    """Profiled position mode with new-point handshaking."""

    MASK_REACHED = 1 << StatusWord.TARGET_REACHED
    MASK_ACKNOWLEDGED = 1 << StatusWord.OPERATION_MODE_SPECIFIC0
    MASK_ERROR = 1 << StatusWord.OPERATION_MODE_SPECIFIC1

    CW_NEW_POINT = int(ControlWord.OPERATION_MODE_SPECIFIC0)
    CW_IMMEDIATE = int(ControlWord.OPERATION_MODE_SPECIFIC1)
    CW_BLENDING = int(ControlWord.OPERATION_MODE_SPECIFIC3)

    def __init__(self, storage: ObjectStorage) -> None:
        super().__init__(_MODE_PROFILED_POSITION, IntType.INT32)
        self._target_position = storage.entry(0x607A)
        self._sw = 0
        self._last_target = math.nan

    def start(self) -> bool:
        self._sw = 0
        self._last_target = math.nan
        return super().start()

    def read(self, sw: int) -> bool:
        self._sw = sw
        return (sw & self.MASK_ERROR) == 0

    def write(self, cw: WordAccessor) -> bool:
        cw.set(self.CW_IMMEDIATE)
        if not self.has_target():
            return False
        target = self.get_target()
        if (self._sw & self.MASK_ACKNOWLEDGED) == 0 and target != self._last_target:
            if cw.test(self.CW_NEW_POINT):
                cw.reset(self.CW_NEW_POINT)
            else:
                self._target_position.set(target)
                cw.set(self.CW_NEW_POINT)
                self._last_target = target
        elif self._sw & self.MASK_ACKNOWLEDGED:
            cw.reset(self.CW_NEW_POINT)
        return True


class HomingMode(Mode):
    """A mode that can run a complete homing procedure."""

    SW_ATTAINED = int(StatusWord.OPERATION_MODE_SPECIFIC0)
    SW_ERROR = int(StatusWord.OPERATION_MODE_SPECIFIC1)
    CW_START_HOMING = int(ControlWord.OPERATION_MODE_SPECIFIC0)

    def __init__(self) -> None:
        super().__init__(_MODE_HOMING)

    @abc.abstractmethod
    def execute_homing(self, status: LayerStatus) -> bool:
        """Run homing to completion; report problems into ``status``."""


class DefaultHomingMode(HomingMode):
    """Homing driven by the homing method object and status word handshake."""

    MASK_REACHED = 1 << StatusWord.TARGET_REACHED
    MASK_ATTAINED = 1 << HomingMode.SW_ATTAINED
    MASK_ERROR = 1 << HomingMode.SW_ERROR

    def __init__(
        self,
        storage: ObjectStorage,
        prepare_timeout: float = 1.0,
        finish_timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self._homing_method = storage.entry(0x6098)
        self.prepare_timeout = prepare_timeout
        self.finish_timeout = finish_timeout
        self._execute = False
        self._status = 0
        self._cond = threading.Condition()

    def start(self) -> bool:
        self._execute = False
        return self.read(0)

    def read(self, sw: int) -> bool:
        with self._cond:
            old = self._status
            self._status = sw & (self.MASK_REACHED | self.MASK_ATTAINED | self.MASK_ERROR)
            if old != self._status:
                self._cond.notify_all()
        return True

    def write(self, cw: WordAccessor) -> bool:
        cw.assign(0)
        if self._execute:
            cw.set(self.CW_START_HOMING)
            return True
        return False

    def _fail(self, status: LayerStatus, message: str) -> bool:
        self._execute = False
        status.error(message)
        return False

    def _wait(self, deadline: float, mask: int, not_equal: int) -> bool:
        return self._cond.wait_for(
            lambda: (self._status & mask) != not_equal,
            max(0.0, deadline - time.monotonic()),
        )

    def execute_homing(self, status: LayerStatus) -> bool:
        if self._homing_method.get_cached() == 0:
            return True

        prepare_deadline = time.monotonic() + self.prepare_timeout
        error, attained, reached = self.MASK_ERROR, self.MASK_ATTAINED, self.MASK_REACHED
        with self._cond:
            if not self._wait(prepare_deadline, error | reached, 0):
                return self._fail(status, "could not prepare homing")
            if self._status & error:
                return self._fail(status, "homing error before start")

            self._execute = True

            if not self._wait(prepare_deadline, error | attained | reached, reached):
                return self._fail(status, "homing did not start")
            if self._status & error:
                return self._fail(status, "homing error at start")

            finish_deadline: Optional[float] = time.monotonic() + self.finish_timeout

            if not self._wait(finish_deadline, error | attained, 0):
                return self._fail(status, "homing not attained")
            if self._status & error:
                return self._fail(status, "homing error during process")

            if not self._wait(finish_deadline, error | reached, 0):
                return self._fail(status, "homing did not stop")
            if self._status & error:
                return self._fail(status, "homing error during stop")

            if (self._status & reached) and (self._status & attained):
                self._execute = False
                return True

        return self._fail(status, "something went wrong while homing")