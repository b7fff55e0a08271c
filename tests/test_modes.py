import math
import threading
import time

import pytest

from cia402drive.modes import (
    CyclicSynchronousPositionMode,
    CyclicSynchronousTorqueMode,
    CyclicSynchronousVelocityMode,
    DefaultHomingMode,
    IntType,
    InterpolatedPositionMode,
    ModeTargetHelper,
    ProfiledPositionMode,
    ProfiledTorqueMode,
    ProfiledVelocityMode,
    VelocityMode,
)
from cia402drive.objects import EntryInvalidError, ObjectStorage
from cia402drive.state402 import op_mode_accessor
from cia402drive.status import Level, LayerStatus


class _TargetMode(ModeTargetHelper):
    def read(self, sw):
        return False

    def write(self, cw):
        return False


ALL_TYPES = list(IntType)


@pytest.fixture
def storage():
    s = ObjectStorage()
    for index in (0x60FF, 0x6071, 0x607A, 0x6042, 0x6098):
        s.define(index, 0, 0)
    s.define(0x60C1, 1, 0)
    return s


# --- clamping cases -------------------------------------------------------


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_nan(int_type):
    mode = _TargetMode(0, int_type)
    assert ModeTargetHelper.set_target(mode, math.nan) is False


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_zero(int_type):
    mode = _TargetMode(0, int_type)
    assert ModeTargetHelper.set_target(mode, 0.0) is True
    assert ModeTargetHelper.get_target(mode) == 0


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_one(int_type):
    mode = _TargetMode(0, int_type)
    assert ModeTargetHelper.set_target(mode, 1.0) is True
    assert ModeTargetHelper.get_target(mode) == 1


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_max(int_type):
    mode = _TargetMode(0, int_type)
    top = float(int_type.max)

    assert ModeTargetHelper.set_target(mode, top)
    assert float(ModeTargetHelper.get_target(mode)) == top

    assert ModeTargetHelper.set_target(mode, top - 1)
    assert float(ModeTargetHelper.get_target(mode)) == top - 1

    assert ModeTargetHelper.set_target(mode, top + 1)
    assert float(ModeTargetHelper.get_target(mode)) == top
    assert ModeTargetHelper.get_target(mode) <= int_type.max


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_min(int_type):
    mode = _TargetMode(0, int_type)
    bottom = float(int_type.min)

    assert ModeTargetHelper.set_target(mode, bottom)
    assert float(ModeTargetHelper.get_target(mode)) == bottom

    assert ModeTargetHelper.set_target(mode, bottom - 1)
    assert float(ModeTargetHelper.get_target(mode)) == bottom

    assert ModeTargetHelper.set_target(mode, bottom + 1)
    assert float(ModeTargetHelper.get_target(mode)) == bottom + 1


# --- target helper --------------------------------------------------------


def test_int_type_ranges():
    assert (IntType.INT8.min, IntType.INT8.max) == (-128, 127)
    assert (IntType.UINT16.min, IntType.UINT16.max) == (0, 65535)
    assert IntType.INT64.max == 9223372036854775807

    int8_mode = _TargetMode(0, IntType.INT8)
    assert ModeTargetHelper.set_target(int8_mode, 1e6)
    assert ModeTargetHelper.get_target(int8_mode) == 127
    uint16_mode = _TargetMode(0, IntType.UINT16)
    assert ModeTargetHelper.set_target(uint16_mode, -5.0)
    assert ModeTargetHelper.get_target(uint16_mode) == 0


def test_truncates_towards_zero():
    mode = _TargetMode(0, IntType.INT16)
    assert ModeTargetHelper.set_target(mode, 1.7)
    assert ModeTargetHelper.get_target(mode) == 1
    assert ModeTargetHelper.set_target(mode, -1.7)
    assert ModeTargetHelper.get_target(mode) == -1


def test_infinity_clamps():
    mode = _TargetMode(0, IntType.INT8)
    assert ModeTargetHelper.set_target(mode, math.inf)
    assert ModeTargetHelper.get_target(mode) == 127
    assert ModeTargetHelper.set_target(mode, -math.inf)
    assert ModeTargetHelper.get_target(mode) == -128


def test_start_clears_target():
    mode = _TargetMode(0, IntType.INT32)
    assert ModeTargetHelper.has_target(mode) is False
    ModeTargetHelper.set_target(mode, 5.0)
    assert ModeTargetHelper.has_target(mode) is True
    assert ModeTargetHelper.start(mode) is True
    assert ModeTargetHelper.has_target(mode) is False


def test_nan_keeps_previous_target():
    mode = _TargetMode(0, IntType.INT32)
    ModeTargetHelper.set_target(mode, 7.0)
    assert ModeTargetHelper.set_target(mode, math.nan) is False
    assert ModeTargetHelper.get_target(mode) == 7


def test_non_number_refused():
    mode = _TargetMode(0, IntType.INT32)
    assert ModeTargetHelper.set_target(mode, "abc") is False
    assert ModeTargetHelper.has_target(mode) is False


# --- forward helpers ------------------------------------------------------


@pytest.mark.parametrize(
    "cls, mode_id, index, subindex",
    [
        (ProfiledVelocityMode, 3, 0x60FF, 0),
        (ProfiledTorqueMode, 4, 0x6071, 0),
        (CyclicSynchronousPositionMode, 8, 0x607A, 0),
        (CyclicSynchronousVelocityMode, 9, 0x60FF, 0),
        (CyclicSynchronousTorqueMode, 10, 0x6071, 0),
        (VelocityMode, 2, 0x6042, 0),
        (InterpolatedPositionMode, 7, 0x60C1, 1),
    ],
)
def test_forward_writes_target(storage, cls, mode_id, index, subindex):
    mode = cls(storage)
    assert mode.mode_id == mode_id
    assert mode.read(0) is True
    cw = op_mode_accessor(0)
    assert mode.write(cw) is False
    assert mode.set_target(123.0)
    assert mode.write(cw) is True
    assert storage.entry(index, subindex).get_cached() == 123


def test_velocity_mode_sets_and_clears_mask(storage):
    mode = VelocityMode(storage)
    cw = op_mode_accessor(0)
    mode.set_target(10.0)
    assert mode.write(cw)
    assert cw.masked() == 0x70
    mode.start()
    assert mode.write(cw) is False
    assert cw.masked() == 0


def test_interpolated_position_mask(storage):
    mode = InterpolatedPositionMode(storage)
    cw = op_mode_accessor(0)
    mode.set_target(1.0)
    mode.write(cw)
    assert cw.masked() == 0x10


def test_forward_profiled_velocity_keeps_other_bits(storage):
    mode = ProfiledVelocityMode(storage)
    cw = op_mode_accessor(0x0F | 0x20)
    mode.set_target(1.0)
    assert mode.write(cw)
    assert cw.word == 0x2F


def test_forward_missing_entry_raises():
    with pytest.raises(EntryInvalidError):
        ProfiledTorqueMode(ObjectStorage())


def test_torque_clamps_to_int16(storage):
    mode = ProfiledTorqueMode(storage)
    mode.set_target(1e9)
    mode.write(op_mode_accessor(0))
    assert storage.entry(0x6071).get_cached() == 32767


# --- profiled position ----------------------------------------------------


def test_profiled_position_handshake(storage):
    mode = ProfiledPositionMode(storage)
    assert mode.mode_id == 1
    assert mode.start()
    cw = op_mode_accessor(0)

    assert mode.write(cw) is False
    assert cw.test(ProfiledPositionMode.CW_IMMEDIATE)

    mode.set_target(100.0)
    assert mode.write(cw) is True
    assert storage.entry(0x607A).get_cached() == 100
    assert cw.test(ProfiledPositionMode.CW_NEW_POINT)

    # same target again, not yet acknowledged: unchanged
    assert mode.write(cw)
    assert cw.test(ProfiledPositionMode.CW_NEW_POINT)

    assert mode.read(ProfiledPositionMode.MASK_ACKNOWLEDGED)
    assert mode.write(cw)
    assert not cw.test(ProfiledPositionMode.CW_NEW_POINT)


def test_profiled_position_new_target_resets_first(storage):
    mode = ProfiledPositionMode(storage)
    mode.start()
    cw = op_mode_accessor(0)
    mode.set_target(100.0)
    mode.write(cw)
    mode.set_target(200.0)
    mode.write(cw)
    assert not cw.test(ProfiledPositionMode.CW_NEW_POINT)
    assert storage.entry(0x607A).get_cached() == 100
    mode.write(cw)
    assert cw.test(ProfiledPositionMode.CW_NEW_POINT)
    assert storage.entry(0x607A).get_cached() == 200


def test_profiled_position_read_error(storage):
    mode = ProfiledPositionMode(storage)
    assert mode.read(ProfiledPositionMode.MASK_ERROR) is False
    assert mode.read(ProfiledPositionMode.MASK_REACHED) is True


# --- homing ---------------------------------------------------------------


def test_homing_refuses_target(storage):
    mode = DefaultHomingMode(storage)
    assert mode.mode_id == 6
    assert mode.set_target(1.0) is False


def test_homing_write_without_execute(storage):
    mode = DefaultHomingMode(storage)
    mode.start()
    cw = op_mode_accessor(0x3F0)
    assert mode.write(cw) is False
    assert cw.masked() == 0


def test_homing_method_zero_succeeds(storage):
    mode = DefaultHomingMode(storage)
    status = LayerStatus()
    assert mode.execute_homing(status) is True
    assert status.level == Level.OK


def test_homing_prepare_timeout(storage):
    storage.entry(0x6098).set(35)
    mode = DefaultHomingMode(storage, prepare_timeout=0.05)
    mode.start()
    status = LayerStatus()
    assert mode.execute_homing(status) is False
    assert status.level == Level.ERROR
    assert "could not prepare homing" in status.reason


def test_homing_error_before_start(storage):
    storage.entry(0x6098).set(35)
    mode = DefaultHomingMode(storage, prepare_timeout=0.05)
    mode.start()
    mode.read(DefaultHomingMode.MASK_ERROR)
    status = LayerStatus()
    assert mode.execute_homing(status) is False
    assert "homing error before start" in status.reason


def test_homing_did_not_start(storage):
    storage.entry(0x6098).set(35)
    mode = DefaultHomingMode(storage, prepare_timeout=0.05)
    mode.start()
    mode.read(DefaultHomingMode.MASK_REACHED)
    status = LayerStatus()
    assert mode.execute_homing(status) is False
    assert "homing did not start" in status.reason
    assert mode.write(op_mode_accessor(0)) is False


def test_homing_full_sequence(storage):
    storage.entry(0x6098).set(35)
    mode = DefaultHomingMode(storage, prepare_timeout=2.0, finish_timeout=2.0)
    mode.start()
    mode.read(DefaultHomingMode.MASK_REACHED)
    started = []

    def device():
        limit = time.monotonic() + 2.0
        while time.monotonic() < limit:
            cw = op_mode_accessor(0)
            if mode.write(cw):
                started.append(cw.masked())
                mode.read(DefaultHomingMode.MASK_ATTAINED | DefaultHomingMode.MASK_REACHED)
                return
            time.sleep(0.005)

    worker = threading.Thread(target=device)
    worker.start()
    status = LayerStatus()
    result = mode.execute_homing(status)
    worker.join()
    assert result is True
    assert status.level == Level.OK
    assert started == [0x10]
    assert mode.write(op_mode_accessor(0)) is False