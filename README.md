# cia402drive

Drive logic for motors that follow the CiA 402 (DS402) device profile. The package
works on an object dictionary that you supply. It decodes the drive's status word,
computes the control word that moves the drive between states, selects operation
modes and forwards targets to them.

## Modules

- `cia402drive.status`: `Level`, `LayerStatus` and `LayerReport`. These collect warnings,
  errors and named diagnostic values. `bounded(level)` tells whether the status is no
  worse than `level`.
- `cia402drive.objects`: `ObjectStorage` and `LocalEntry`, an in-memory object dictionary
  keyed by `(index, subindex)`. `entry()` raises `EntryInvalidError` for an undefined
  object. A `LocalEntry` can be given `reader` and `writer` callables. `get()` and `set()`
  call them, while `get_cached()` and `set_cached()` only touch the stored value.
- `cia402drive.state402`: `StatusWord`, `ControlWord` and `InternalState` bit and state
  enums.
  - `State402` decodes status words and lets you wait for a state change.
  - `set_transition()` returns the new control word and the state it leads to, or raises
    `IllegalTransitionError`.
  - `next_state_for_enabling()` gives the next hop towards `OPERATION_ENABLE`.
  - `WordAccessor` and `op_mode_accessor()` give masked access to the operation-mode
    control bits.
- `cia402drive.modes`: the operation-mode handlers.
  - Forwarding modes: `ProfiledVelocityMode`, `ProfiledTorqueMode`, `VelocityMode`,
    `InterpolatedPositionMode` and the three cyclic synchronous modes.
  - `ProfiledPositionMode`, which runs the new-point handshake.
  - `DefaultHomingMode`, driven by object 0x6098 and the status word.

  Targets are truncated and clamped to the range of the mode's `IntType`. NaN is refused.
- `cia402drive.motor`: `Motor402` (with `OperationMode`, `LayerState`, `MotorBase`) and
  `allocate_motor()` to build one.

## State machine and modes

```python
from cia402drive.state402 import InternalState, State402, set_transition
from cia402drive.objects import ObjectStorage
from cia402drive.modes import ProfiledVelocityMode
from cia402drive.state402 import op_mode_accessor

state = State402()
state.read(0x0237)                    # InternalState.OPERATION_ENABLE

cw, hop = set_transition(0, InternalState.SWITCH_ON_DISABLED,
                         InternalState.OPERATION_ENABLE, True)
# cw == 0x0006 ("shutdown" command), hop == InternalState.READY_TO_SWITCH_ON

storage = ObjectStorage()
storage.define(0x60FF, 0, 0)          # target velocity
mode = ProfiledVelocityMode(storage)
mode.start()
mode.set_target(1e12)                 # clamped to the int32 maximum
mode.write(op_mode_accessor(0))
storage.entry(0x60FF).get_cached()    # 2147483647
```

## Motor layer

`Motor402` needs these objects in its storage:

| Object | Meaning                   |
|--------|---------------------------|
| 0x6041 | status word               |
| 0x6040 | control word              |
| 0x6061 | modes of operation display |
| 0x6060 | modes of operation        |
| 0x6502 | supported drive modes     |

If 0x6502 is missing, every mode query raises `RuntimeError`. Each mode the device
supports also needs its target object: 0x607A, 0x60FF, 0x6071, 0x6042 and 0x60C1 sub 1,
plus 0x6098 for homing.

```python
from cia402drive.motor import allocate_motor, LayerState, OperationMode
from cia402drive.status import LayerStatus

motor = allocate_motor("axis", storage, {
    "switching_state": 5,           # state used while switching modes
    "monitor_mode": True,           # read 0x6061 from the device on every cycle
    "state_switch_timeout": 5,      # seconds
})
motor.register_default_modes(storage)
```

The motor does no bus I/O of its own. Call `handle_read(status, LayerState.READY)` and
`handle_write(status, LayerState.READY)` once per bus cycle, usually from a separate
thread.

- `handle_read` reads the status word with `get()`.
- `handle_write` stores the control word in 0x6040 with `set_cached()`. Your bus code
  sends it from there.

`handle_init`, `handle_recover`, `handle_shutdown` and `enter_mode_and_wait` block until
the drive's status word reports each new state. If the state does not change in time,
they record `"Transition timeout"` in the status. Mode switches wait up to
`mode_switch_timeout` seconds.

While the drive is in Operation Enabled, `set_target()` passes the value to the selected
mode. `handle_diag(report)` fills a `LayerReport` with the drive's condition.
`handle_halt` commands a quick stop. Your own modes can be added with
`register_mode_factory(mode, factory)`.

## What this package does not do

It does not talk to a CAN bus. It does not implement SDO or PDO transfer or NMT, and it
does not parse EDS/DCF files. It has no command-line program. Connecting `ObjectStorage`
entries to a real device, and running the read/write cycle, is up to the caller.

## Tests

```
pip install cia402drive[test]
pytest
```