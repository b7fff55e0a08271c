"""The drive state machine: status word decoding and control word transitions."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass

log = logging.getLogger(__name__)

_WORD = 0xFFFF


class StatusWord(enum.IntEnum):
    """Bit positions in the status word."""

    READY_TO_SWITCH_ON = 0
    SWITCHED_ON = 1
    OPERATION_ENABLED = 2
    FAULT = 3
    VOLTAGE_ENABLED = 4
    QUICK_STOP = 5
    SWITCH_ON_DISABLED = 6
    WARNING = 7
    MANUFACTURER_SPECIFIC0 = 8
    REMOTE = 9
    TARGET_REACHED = 10
    INTERNAL_LIMIT = 11
    OPERATION_MODE_SPECIFIC0 = 12
    OPERATION_MODE_SPECIFIC1 = 13
    MANUFACTURER_SPECIFIC1 = 14
    MANUFACTURER_SPECIFIC2 = 15


class ControlWord(enum.IntEnum):
    """Bit positions in the control word."""

    SWITCH_ON = 0
    ENABLE_VOLTAGE = 1
    QUICK_STOP = 2
    ENABLE_OPERATION = 3
    OPERATION_MODE_SPECIFIC0 = 4
    OPERATION_MODE_SPECIFIC1 = 5
    OPERATION_MODE_SPECIFIC2 = 6
    FAULT_RESET = 7
    HALT = 8
    OPERATION_MODE_SPECIFIC3 = 9
    MANUFACTURER_SPECIFIC0 = 11
    MANUFACTURER_SPECIFIC1 = 12
    MANUFACTURER_SPECIFIC2 = 13
    MANUFACTURER_SPECIFIC3 = 14
    MANUFACTURER_SPECIFIC4 = 15


class InternalState(enum.IntEnum):
    """States of the drive state machine; START is an alias of UNKNOWN."""

    UNKNOWN = 0
    START = 0
    NOT_READY_TO_SWITCH_ON = 1
    SWITCH_ON_DISABLED = 2
    READY_TO_SWITCH_ON = 3
    SWITCHED_ON = 4
    OPERATION_ENABLE = 5
    QUICK_STOP_ACTIVE = 6
    FAULT_REACTION_ACTIVE = 7
    FAULT = 8


class IllegalTransitionError(ValueError):
    """Raised when no control word command leads between two states."""


def _bits(*positions: int) -> int:
    value = 0
    for bit in positions:
        value |= 1 << bit
    return value


_R = _bits(StatusWord.READY_TO_SWITCH_ON)
_S = _bits(StatusWord.SWITCHED_ON)
_O = _bits(StatusWord.OPERATION_ENABLED)
_F = _bits(StatusWord.FAULT)
_Q = _bits(StatusWord.QUICK_STOP)
_D = _bits(StatusWord.SWITCH_ON_DISABLED)
_STATE_MASK = _D | _Q | _F | _O | _S | _R

_DECODE: dict[int, InternalState] = {
    0: InternalState.NOT_READY_TO_SWITCH_ON,
    _Q: InternalState.NOT_READY_TO_SWITCH_ON,
    _D: InternalState.SWITCH_ON_DISABLED,
    _D | _Q: InternalState.SWITCH_ON_DISABLED,
    _Q | _R: InternalState.READY_TO_SWITCH_ON,
    _Q | _S | _R: InternalState.SWITCHED_ON,
    _Q | _O | _S | _R: InternalState.OPERATION_ENABLE,
    _O | _S | _R: InternalState.QUICK_STOP_ACTIVE,
    _F | _O | _S | _R: InternalState.FAULT_REACTION_ACTIVE,
    _Q | _F | _O | _S | _R: InternalState.FAULT_REACTION_ACTIVE,
    _F: InternalState.FAULT,
    _Q | _F: InternalState.FAULT,
}


class State402:
    """Tracks the drive state decoded from status words, thread-safely."""

    def __init__(self) -> None:
        self._state = InternalState.UNKNOWN
        self._cond = threading.Condition()

    def get_state(self) -> InternalState:
        with self._cond:
            return self._state

    def read(self, sw: int) -> InternalState:
        """Decode a status word, store the resulting state and return it."""
        masked = sw & _STATE_MASK
        new_state = _DECODE.get(masked)
        if new_state is None:
            log.warning("Motor is currently in an unknown state: %x", masked)
            new_state = InternalState.UNKNOWN
        with self._cond:
            if new_state != self._state:
                self._state = new_state
                self._cond.notify_all()
            return self._state

    def wait_for_new_state(
        self, deadline: float, state: InternalState
    ) -> tuple[bool, InternalState]:
        """Wait until the state differs from ``state`` or ``deadline`` passes.

        ``deadline`` is a :func:`time.monotonic` value. Returns whether the
        state changed and the state now held.
        """
        with self._cond:
            while self._state == state:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            return self._state != state, self._state


@dataclass(frozen=True)
class _Op:
    to_set: int
    to_reset: int

    def __call__(self, word: int) -> int:
        return ((word & ~self.to_reset) | self.to_set) & _WORD


def _build_transitions() -> dict[tuple[InternalState, InternalState], _Op]:
    s = InternalState
    cw = ControlWord
    table: dict[tuple[InternalState, InternalState], _Op] = {}

    def add(from_state: InternalState, to_state: InternalState, op: _Op) -> None:
        table.setdefault((from_state, to_state), op)

    disable_voltage = _Op(0, _bits(cw.FAULT_RESET, cw.ENABLE_VOLTAGE))
    add(s.READY_TO_SWITCH_ON, s.SWITCH_ON_DISABLED, disable_voltage)
    add(s.OPERATION_ENABLE, s.SWITCH_ON_DISABLED, disable_voltage)
    add(s.SWITCHED_ON, s.SWITCH_ON_DISABLED, disable_voltage)
    add(s.QUICK_STOP_ACTIVE, s.SWITCH_ON_DISABLED, disable_voltage)

    automatic = _Op(0, 0)
    add(s.START, s.NOT_READY_TO_SWITCH_ON, automatic)
    add(s.NOT_READY_TO_SWITCH_ON, s.SWITCH_ON_DISABLED, automatic)
    add(s.FAULT_REACTION_ACTIVE, s.FAULT, automatic)

    shutdown = _Op(
        _bits(cw.QUICK_STOP, cw.ENABLE_VOLTAGE), _bits(cw.FAULT_RESET, cw.SWITCH_ON)
    )
    add(s.SWITCH_ON_DISABLED, s.READY_TO_SWITCH_ON, shutdown)
    add(s.SWITCHED_ON, s.READY_TO_SWITCH_ON, shutdown)
    add(s.OPERATION_ENABLE, s.READY_TO_SWITCH_ON, shutdown)

    switch_on = _Op(
        _bits(cw.QUICK_STOP, cw.ENABLE_VOLTAGE, cw.SWITCH_ON),
        _bits(cw.FAULT_RESET, cw.ENABLE_OPERATION),
    )
    add(s.READY_TO_SWITCH_ON, s.SWITCHED_ON, switch_on)
    add(s.OPERATION_ENABLE, s.SWITCHED_ON, switch_on)

    enable_operation = _Op(
        _bits(cw.QUICK_STOP, cw.ENABLE_VOLTAGE, cw.SWITCH_ON, cw.ENABLE_OPERATION),
        _bits(cw.FAULT_RESET),
    )
    add(s.SWITCHED_ON, s.OPERATION_ENABLE, enable_operation)
    add(s.QUICK_STOP_ACTIVE, s.OPERATION_ENABLE, enable_operation)

    quickstop = _Op(_bits(cw.ENABLE_VOLTAGE), _bits(cw.FAULT_RESET, cw.QUICK_STOP))
    add(s.READY_TO_SWITCH_ON, s.QUICK_STOP_ACTIVE, quickstop)
    add(s.SWITCHED_ON, s.QUICK_STOP_ACTIVE, quickstop)
    add(s.OPERATION_ENABLE, s.QUICK_STOP_ACTIVE, quickstop)

    add(s.FAULT, s.SWITCH_ON_DISABLED, _Op(_bits(cw.FAULT_RESET), 0))
    return table


_TRANSITIONS = _build_transitions()

_ENABLING_STEP: dict[InternalState, InternalState] = {
    InternalState.START: InternalState.NOT_READY_TO_SWITCH_ON,
    InternalState.FAULT: InternalState.SWITCH_ON_DISABLED,
    InternalState.NOT_READY_TO_SWITCH_ON: InternalState.SWITCH_ON_DISABLED,
    InternalState.SWITCH_ON_DISABLED: InternalState.READY_TO_SWITCH_ON,
    InternalState.READY_TO_SWITCH_ON: InternalState.SWITCHED_ON,
    InternalState.SWITCHED_ON: InternalState.OPERATION_ENABLE,
    InternalState.QUICK_STOP_ACTIVE: InternalState.OPERATION_ENABLE,
    InternalState.OPERATION_ENABLE: InternalState.OPERATION_ENABLE,
    InternalState.FAULT_REACTION_ACTIVE: InternalState.FAULT,
}


def next_state_for_enabling(state: InternalState) -> InternalState:
    """Return the next hop on the way from ``state`` to OPERATION_ENABLE."""
    try:
        return _ENABLING_STEP[InternalState(state)]
    except (KeyError, ValueError):
        raise ValueError("state value is illegal") from None


def set_transition(
    cw: int,
    from_state: InternalState,
    to_state: InternalState,
    want_next: bool,
) -> tuple[int, InternalState]:
    """Apply the command leading from ``from_state`` towards ``to_state``.

    With ``want_next`` a request for OPERATION_ENABLE is broken into single
    hops. Returns the new control word and the state the command leads to.
    Raises :class:`IllegalTransitionError` if no command exists.
    """
    if from_state == to_state:
        return cw, to_state
    hop = to_state
    try:
        if want_next and to_state == InternalState.OPERATION_ENABLE:
            hop = next_state_for_enabling(from_state)
        op = _TRANSITIONS[(from_state, hop)]
    except (KeyError, ValueError):
        log.warning("illegal transition %s -> %s", from_state, to_state)
        raise IllegalTransitionError(
            f"illegal transition {from_state.name} -> {to_state.name}"
        ) from None
    return op(cw), hop


class WordAccessor:
    """Bit access to a 16-bit word, restricted to the bits in ``mask``."""

    def __init__(self, mask: int, word: int = 0) -> None:
        self.mask = mask & _WORD
        self.word = word & _WORD

    def set(self, bit: int) -> bool:
        """Set a bit if it is in the mask; return whether it was."""
        value = self.mask & (1 << bit)
        self.word |= value
        return bool(value)

    def reset(self, bit: int) -> bool:
        """Clear a bit if it is in the mask; return whether it was."""
        value = self.mask & (1 << bit)
        self.word &= ~value & _WORD
        return bool(value)

    def test(self, bit: int) -> bool:
        """Return whether a bit is set anywhere in the word."""
        return bool(self.word & (1 << bit))

    def masked(self) -> int:
        """Return only the bits covered by the mask."""
        return self.word & self.mask

    def assign(self, value: int) -> None:
        """Replace the masked bits with those of ``value``."""
        self.word = ((self.word & ~self.mask) | (value & self.mask)) & _WORD


OP_MODE_MASK = _bits(
    ControlWord.OPERATION_MODE_SPECIFIC0,
    ControlWord.OPERATION_MODE_SPECIFIC1,
    ControlWord.OPERATION_MODE_SPECIFIC2,
    ControlWord.OPERATION_MODE_SPECIFIC3,
)


def op_mode_accessor(word: int) -> WordAccessor:
    """Return an accessor over the operation-mode-specific control word bits."""
    return WordAccessor(OP_MODE_MASK, word)