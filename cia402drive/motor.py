"""A drive that follows the CiA 402 device profile, built on an object dictionary."""

from __future__ import annotations

import abc
import enum
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Optional

from .modes import (
    CyclicSynchronousPositionMode,
    CyclicSynchronousTorqueMode,
    CyclicSynchronousVelocityMode,
    DefaultHomingMode,
    HomingMode,
    InterpolatedPositionMode,
    Mode,
    ProfiledPositionMode,
    ProfiledTorqueMode,
    ProfiledVelocityMode,
    VelocityMode,
)
from .objects import EntryInvalidError, ObjectStorage
from .state402 import (
    ControlWord,
    IllegalTransitionError,
    InternalState,
    State402,
    StatusWord,
    op_mode_accessor,
    set_transition,
)
from .status import Level, LayerReport, LayerStatus

log = logging.getLogger(__name__)

_WORD = 0xFFFF
_HALT = 1 << ControlWord.HALT
_FAULT_RESET = 1 << ControlWord.FAULT_RESET
_INTERNAL_LIMIT = 1 << StatusWord.INTERNAL_LIMIT
_WARNING = 1 << StatusWord.WARNING


class OperationMode(enum.IntEnum):
    """Modes of operation defined by the device profile."""

    NO_MODE = 0
    PROFILED_POSITION = 1
    VELOCITY = 2
    PROFILED_VELOCITY = 3
    PROFILED_TORQUE = 4
    RESERVED = 5
    HOMING = 6
    INTERPOLATED_POSITION = 7
    CYCLIC_SYNCHRONOUS_POSITION = 8
    CYCLIC_SYNCHRONOUS_VELOCITY = 9
    CYCLIC_SYNCHRONOUS_TORQUE = 10


class LayerState(enum.IntEnum):
    """Lifecycle states of a layer, ordered by increasing activity."""

    OFF = 0
    INIT = 1
    SHUTDOWN = 2
    ERROR = 3
    HALT = 4
    RECOVER = 5
    READY = 6


class MotorBase(abc.ABC):
    """Interface of a motor that accepts targets in selectable modes."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abc.abstractmethod
    def set_target(self, value: float) -> bool:
        """Pass a target to the active mode."""

    @abc.abstractmethod
    def enter_mode_and_wait(self, mode: int) -> bool:
        """Switch to ``mode`` and block until the drive reports it."""

    @abc.abstractmethod
    def is_mode_supported(self, mode: int) -> bool:
        """Return whether ``mode`` can be entered."""

    @abc.abstractmethod
    def get_mode(self) -> int:
        """Return the currently selected mode."""

    def register_default_modes(self, storage: ObjectStorage) -> None:
        """Register the standard mode handlers; nothing by default."""


class Motor402(MotorBase):
    """A CiA 402 drive: state machine control plus mode handling."""

    MODE_SWITCH_TIMEOUT = 5.0
    POLL_INTERVAL = 0.02

    def __init__(
        self,
        name: str,
        storage: ObjectStorage,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(name)
        settings = settings if settings is not None else {}
        self.switching_state = InternalState(
            settings.get("switching_state", InternalState.OPERATION_ENABLE)
        )
        self.monitor_mode = bool(settings.get("monitor_mode", True))
        self.state_switch_timeout = float(settings.get("state_switch_timeout", 5))
        self.mode_switch_timeout = self.MODE_SWITCH_TIMEOUT
        self.poll_interval = self.POLL_INTERVAL

        self._status_word_entry = storage.entry(0x6041)
        self._control_word_entry = storage.entry(0x6040)
        self._op_mode_display = storage.entry(0x6061)
        self._op_mode = storage.entry(0x6060)
        try:
            self._supported_drive_modes = storage.entry(0x6502)
        except EntryInvalidError:
            self._supported_drive_modes = None

        self._status_word = 0
        self._sw_lock = threading.Lock()
        self._control_word = 0
        self._cw_lock = threading.Lock()
        self._start_fault_reset = False
        self._target_state = InternalState.UNKNOWN

        self._state_handler = State402()

        self._map_lock = threading.Lock()
        self._modes: dict[int, Mode] = {}
        self._mode_allocators: dict[int, Callable[[], Mode]] = {}

        self._selected_mode: Optional[Mode] = None
        self._mode_id = int(OperationMode.NO_MODE)
        self._mode_cond = threading.Condition()

    @property
    def state(self) -> InternalState:
        """The drive state decoded from the last status word."""
        return self._state_handler.get_state()

    # -- public interface -------------------------------------------------

    def set_target(self, value: float) -> bool:
        if self._state_handler.get_state() != InternalState.OPERATION_ENABLE:
            return False
        with self._mode_cond:
            mode = self._selected_mode
            return mode is not None and mode.set_target(value)

    def is_mode_supported(self, mode: int) -> bool:
        return mode != OperationMode.HOMING and self._alloc_mode(mode) is not None

    def enter_mode_and_wait(self, mode: int) -> bool:
        status = LayerStatus()
        okay = mode != OperationMode.HOMING and self._switch_mode(status, mode)
        if not status.bounded(Level.OK):
            log.error("Could not switch to mode %s, reason: %s", mode, status.reason)
        return okay

    def get_mode(self) -> int:
        with self._mode_cond:
            mode = self._selected_mode
            return mode.mode_id if mode is not None else int(OperationMode.NO_MODE)

    def register_mode_factory(self, mode: int, factory: Callable[[], Mode]) -> bool:
        """Register how to build the handler for ``mode``.

        The handler is built on initialisation if the device supports the
        mode. Returns False if a factory for ``mode`` already exists.
        """
        with self._map_lock:
            if mode in self._mode_allocators:
                return False
            self._mode_allocators[mode] = factory
            return True

    def register_default_modes(self, storage: ObjectStorage) -> None:
        defaults: list[tuple[int, type[Mode]]] = [
            (OperationMode.PROFILED_POSITION, ProfiledPositionMode),
            (OperationMode.VELOCITY, VelocityMode),
            (OperationMode.PROFILED_VELOCITY, ProfiledVelocityMode),
            (OperationMode.PROFILED_TORQUE, ProfiledTorqueMode),
            (OperationMode.HOMING, DefaultHomingMode),
            (OperationMode.INTERPOLATED_POSITION, InterpolatedPositionMode),
            (OperationMode.CYCLIC_SYNCHRONOUS_POSITION, CyclicSynchronousPositionMode),
            (OperationMode.CYCLIC_SYNCHRONOUS_VELOCITY, CyclicSynchronousVelocityMode),
            (OperationMode.CYCLIC_SYNCHRONOUS_TORQUE, CyclicSynchronousTorqueMode),
        ]
        for mode, cls in defaults:
            self.register_mode_factory(int(mode), lambda cls=cls: cls(storage))

    # -- mode bookkeeping -------------------------------------------------

    def _is_mode_supported_by_device(self, mode: int) -> bool:
        if self._supported_drive_modes is None:
            raise RuntimeError("Supported drive modes (object 6502) is not valid")
        return 0 < mode <= 32 and bool(
            self._supported_drive_modes.get_cached() & (1 << (mode - 1))
        )

    def _register_mode(self, mode_id: int, mode: Optional[Mode]) -> None:
        with self._map_lock:
            if mode is not None and mode.mode_id == mode_id:
                self._modes.setdefault(mode_id, mode)

    def _alloc_mode(self, mode: int) -> Optional[Mode]:
        if self._is_mode_supported_by_device(mode):
            with self._map_lock:
                return self._modes.get(mode)
        return None

    def _switch_mode(self, status: LayerStatus, mode: int) -> bool:
        if mode == OperationMode.NO_MODE:
            with self._mode_cond:
                self._selected_mode = None
                try:
                    self._op_mode.set(mode)
                except Exception:  # the device may refuse; the selection is gone anyway
                    pass
            return True

        next_mode = self._alloc_mode(mode)
        if next_mode is None:
            status.error("Mode is not supported.")
            return False
        if not next_mode.start():
            status.error("Could not start mode.")
            return False

        with self._mode_cond:
            selected = self._selected_mode
            if self._mode_id == mode and selected is not None and selected.mode_id == mode:
                return True
            self._selected_mode = None

        if not self._switch_state(status, self.switching_state):
            return False

        self._op_mode.set(mode)

        okay = False
        with self._mode_cond:
            deadline = time.monotonic() + self.mode_switch_timeout
            if self.monitor_mode:
                while self._mode_id != mode:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0 or not self._mode_cond.wait(remaining):
                        break
            else:
                while self._mode_id != mode and time.monotonic() < deadline:
                    self._mode_cond.release()
                    try:
                        self._op_mode_display.get()
                        time.sleep(self.poll_interval)
                    finally:
                        self._mode_cond.acquire()

            if self._mode_id == mode:
                self._selected_mode = next_mode
                okay = True
            else:
                status.error("Mode switch timed out.")
                self._op_mode.set(self._mode_id)

        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            return False
        return okay

    # -- state machine ----------------------------------------------------

    def _switch_state(self, status: LayerStatus, target: InternalState) -> bool:
        deadline = time.monotonic() + self.state_switch_timeout
        state = self._state_handler.get_state()
        self._target_state = target
        while state != self._target_state:
            with self._cw_lock:
                try:
                    self._control_word, next_state = set_transition(
                        self._control_word, state, self._target_state, True
                    )
                except IllegalTransitionError:
                    status.error("Could not set transition")
                    return False
            if state != next_state:
                changed, state = self._state_handler.wait_for_new_state(deadline, state)
                if not changed:
                    status.error("Transition timeout")
                    return False
        return state == target

    def _read_state(self, status: LayerStatus, current_state: LayerState) -> bool:
        sw = self._status_word_entry.get()
        with self._sw_lock:
            old_sw, self._status_word = self._status_word, sw

        self._state_handler.read(sw)

        with self._mode_cond:
            new_mode = (
                self._op_mode_display.get()
                if self.monitor_mode
                else self._op_mode_display.get_cached()
            )
            selected = self._selected_mode
            if selected is not None and selected.mode_id == new_mode:
                if not selected.read(sw):
                    status.error("Mode handler has error")
            if new_mode != self._mode_id:
                self._mode_id = new_mode
                self._mode_cond.notify_all()
            if selected is not None and selected.mode_id != new_mode:
                status.warn("mode does not match")

        if sw & _INTERNAL_LIMIT:
            if old_sw & _INTERNAL_LIMIT or current_state != LayerState.READY:
                status.warn("Internal limit active")
            else:
                status.error("Internal limit active")
        return True

    # -- layer handlers ---------------------------------------------------

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.OFF:
            self._read_state(status, current_state)

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state <= LayerState.OFF:
            return
        with self._cw_lock:
            self._control_word |= _HALT
            if self._state_handler.get_state() == InternalState.OPERATION_ENABLE:
                with self._mode_cond:
                    accessor = op_mode_accessor(self._control_word)
                    okay = False
                    selected = self._selected_mode
                    if selected is not None and selected.mode_id == self._mode_id:
                        okay = selected.write(accessor)
                    else:
                        accessor.assign(0)
                    self._control_word = accessor.word
                    if okay:
                        self._control_word &= ~_HALT & _WORD
            if self._start_fault_reset:
                self._start_fault_reset = False
                self._control_word_entry.set_cached(self._control_word & ~_FAULT_RESET & _WORD)
            else:
                self._control_word_entry.set_cached(self._control_word)

    def handle_diag(self, report: LayerReport) -> None:
        with self._sw_lock:
            sw = self._status_word
        state = self._state_handler.get_state()

        if state in (
            InternalState.NOT_READY_TO_SWITCH_ON,
            InternalState.SWITCH_ON_DISABLED,
            InternalState.READY_TO_SWITCH_ON,
            InternalState.SWITCHED_ON,
        ):
            report.warn("Motor operation is not enabled")
        elif state == InternalState.QUICK_STOP_ACTIVE:
            report.error("Quick stop is active")
        elif state in (InternalState.FAULT, InternalState.FAULT_REACTION_ACTIVE):
            report.error("Motor has fault")
        elif state == InternalState.UNKNOWN:
            report.error("State is unknown")
            report.add("status_word", sw)

        if sw & _WARNING:
            report.warn("Warning bit is set")
        if sw & _INTERNAL_LIMIT:
            report.error("Internal limit active")

    def handle_init(self, status: LayerStatus) -> None:
        with self._map_lock:
            allocators = list(self._mode_allocators.items())
        for mode, factory in allocators:
            if self._is_mode_supported_by_device(mode):
                self._register_mode(mode, factory())

        if not self._read_state(status, LayerState.INIT):
            status.error("Could not read motor state")
            return
        with self._cw_lock:
            self._control_word = 0
            self._start_fault_reset = True
        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            status.error("Could not enable motor")
            return

        homing = self._alloc_mode(OperationMode.HOMING)
        if homing is None:
            return
        if not isinstance(homing, HomingMode):
            status.error("Homing mode has incorrect handler")
            return
        if not self._switch_mode(status, OperationMode.HOMING):
            status.error("Could not enter homing mode")
            return
        if not homing.execute_homing(status):
            status.error("Homing failed")
            return
        self._switch_mode(status, OperationMode.NO_MODE)

    def handle_shutdown(self, status: LayerStatus) -> None:
        self._switch_mode(status, OperationMode.NO_MODE)
        self._switch_state(status, InternalState.SWITCH_ON_DISABLED)

    def handle_halt(self, status: LayerStatus) -> None:
        state = self._state_handler.get_state()
        with self._cw_lock:
            if state in (InternalState.FAULT_REACTION_ACTIVE, InternalState.FAULT):
                return
            if state != InternalState.OPERATION_ENABLE:
                self._target_state = state
                return
            self._target_state = InternalState.QUICK_STOP_ACTIVE
            try:
                self._control_word, _ = set_transition(
                    self._control_word, state, InternalState.QUICK_STOP_ACTIVE, False
                )
            except IllegalTransitionError:
                status.warn("Could not quick stop")

    def handle_recover(self, status: LayerStatus) -> None:
        with self._cw_lock:
            self._start_fault_reset = True
        with self._mode_cond:
            selected = self._selected_mode
            if selected is not None and not selected.start():
                status.error("Could not restart mode.")
                return
        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            status.error("Could not enable motor")


def allocate_motor(
    name: str, storage: ObjectStorage, settings: Optional[Mapping[str, Any]] = None
) -> Motor402:
    """Create a :class:`Motor402` for the given object dictionary."""
    return Motor402(name, storage, settings)