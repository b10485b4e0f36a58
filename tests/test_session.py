from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from kt88 import commands
from kt88.commands import HardwareFilter, ImpedanceMode, Montage, Reference
from kt88.config import AcquisitionRuntime, DeviceSetup, SerialSettings
from kt88.session import AcquisitionActiveError, Session, SessionState

DEFAULT_SEQUENCE = [
    b"\x90\x02",
    b"\x80\x00",
    b"\x81\x00",
    b"\x91\x01",
    b"\x90\x09",
    b"\x90\x03",
    b"\x90\x06",
]


class FakeSerialInstance:
    def __init__(self, timeout: float = 0.02, fail_writes: tuple[bytes, ...] = (), read_failures: int = 0):
        self.timeout = timeout
        self.is_open = True
        self.writes: list[bytes] = []
        self.write_times: list[float] = []
        self.resets = 0
        self._rx = bytearray()
        self._lock = threading.Lock()
        self._fail_writes = fail_writes
        self._read_failures = read_failures

    def feed(self, data: bytes) -> None:
        with self._lock:
            self._rx.extend(data)

    def read(self, size: int = 1) -> bytes:
        with self._lock:
            if self._read_failures > 0:
                self._read_failures -= 1
                raise RuntimeError("mock read failure")
        deadline = time.monotonic() + self.timeout
        while True:
            with self._lock:
                if len(self._rx) >= size or time.monotonic() >= deadline:
                    data = bytes(self._rx[:size])
                    del self._rx[:size]
                    return data
            time.sleep(0.001)

    def write(self, data: bytes) -> int:
        if data in self._fail_writes:
            raise RuntimeError("mock write failure")
        self.writes.append(bytes(data))
        self.write_times.append(time.monotonic())
        return len(data)

    def reset_input_buffer(self) -> None:
        self.resets += 1
        with self._lock:
            self._rx.clear()

    def reset_output_buffer(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


class FakeSerialModule:
    SerialException = OSError

    def __init__(self, instance: FakeSerialInstance | None = None, fail: bool = False):
        self.instance = instance or FakeSerialInstance()
        self.fail = fail
        self.kwargs: dict = {}

    def Serial(self, **kwargs):
        self.kwargs = kwargs
        if self.fail:
            raise self.SerialException("mock: no such port")
        return self.instance


def make_frame(marker: int = 0xE0, ch1_raw: int = 2048) -> bytes:
    payload = bytearray(45)
    payload[6] = (ch1_raw >> 8) & 0x0F
    payload[8] = ch1_raw & 0x7F
    return bytes([marker]) + bytes(payload)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def fake_serial(monkeypatch):
    module = FakeSerialModule()
    monkeypatch.setattr("kt88.session.serial", module)
    return module


def open_session(**kwargs) -> Session:
    session = Session(
        SerialSettings(port="/dev/ttyFAKE", timeout=0.02),
        runtime=kwargs.pop("runtime", AcquisitionRuntime(join_timeout_s=1.0, error_backoff_s=0.01)),
        device=kwargs.pop("device", DeviceSetup(settle_delay_s=0.0)),
        **kwargs,
    )
    assert session.open()
    return session


def test_open_uses_device_line_settings(fake_serial):
    session = open_session()
    assert session.state is SessionState.CONNECTED
    assert fake_serial.kwargs["port"] == "/dev/ttyFAKE"
    assert fake_serial.kwargs["baudrate"] == 921600
    assert fake_serial.kwargs["bytesize"] == 8
    assert fake_serial.kwargs["parity"] == "N"
    assert fake_serial.kwargs["stopbits"] == 1
    assert fake_serial.kwargs["write_timeout"] == 0.5
    assert fake_serial.kwargs["rtscts"] is False
    session.close()


def test_open_failure_returns_false(monkeypatch):
    monkeypatch.setattr("kt88.session.serial", FakeSerialModule(fail=True))
    session = Session(SerialSettings(port="/dev/ttyMISSING"))
    assert session.open() is False
    assert session.state is SessionState.IDLE
    assert not session.is_open


def test_send_on_closed_session_is_noop():
    session = Session()
    assert session.send(commands.start_acquisition()) is False


def test_default_configuration_order_and_delays(fake_serial):
    delays: list[float] = []
    session = open_session(device=DeviceSetup(settle_delay_s=0.3), sleep=delays.append)

    session.send_default_configuration()

    assert fake_serial.instance.writes == DEFAULT_SEQUENCE
    assert delays == [0.3] * 7
    assert fake_serial.instance.resets == 1
    session.close()


def test_default_configuration_real_settle_delay(fake_serial):
    session = open_session(device=DeviceSetup(settle_delay_s=0.02))
    session.send_default_configuration()
    gaps = np.diff(fake_serial.instance.write_times)
    assert len(gaps) == 6
    assert np.all(gaps >= 0.015)
    session.close()


def test_default_configuration_survives_failed_step(fake_serial):
    fake_serial.instance = FakeSerialInstance(fail_writes=(b"\x80\x00",))
    session = open_session()
    session.send_default_configuration()
    assert fake_serial.instance.writes == [cmd for cmd in DEFAULT_SEQUENCE if cmd != b"\x80\x00"]
    session.close()


def test_configure_applies_device_setup(fake_serial):
    session = open_session()
    session.configure(DeviceSetup(reference="AVG", montage=3, hardware_filter=False, settle_delay_s=0.0))
    assert fake_serial.instance.writes[-3:] == [b"\x91\x04", b"\x92\x03", b"\x90\x04"]
    session.close()


def test_configuration_commands(fake_serial):
    session = open_session()
    session.set_reference(Reference.CZ)
    session.set_montage(Montage.MONTAGE_9)
    session.set_hardware_filter(HardwareFilter.DISABLE)
    session.set_impedance(ImpedanceMode.START)
    assert fake_serial.instance.writes == [b"\x91\x05", b"\x92\x09", b"\x90\x04", b"\x90\x05"]
    session.close()


def test_stop_without_start_sends_stop_only(fake_serial):
    session = open_session()
    session.stop_acquisition()
    assert fake_serial.instance.writes == [b"\x90\x02"]
    assert session.state is SessionState.CONNECTED
    assert session.stats() == {}
    session.close()


def test_start_twice_runs_single_loop(fake_serial):
    session = open_session()
    try:
        assert session.start_acquisition()
        assert session.start_acquisition()
        assert session.state is SessionState.ACQUIRING
        loops = [t for t in threading.enumerate() if t.name == "kt88-acquisition" and t.is_alive()]
        assert len(loops) == 1
        assert fake_serial.instance.writes == [b"\x90\x01", b"\x90\x01"]
    finally:
        session.close()
    assert not any(t.name == "kt88-acquisition" and t.is_alive() for t in threading.enumerate())


def test_start_on_unopened_session_returns_false():
    session = Session()
    assert session.start_acquisition() is False
    assert not session.is_acquiring


def test_acquisition_delivers_vectors_in_order(fake_serial):
    session = open_session()
    received: list[np.ndarray] = []
    session.subscribe(received.append)
    try:
        session.start_acquisition()
        fake_serial.instance.feed(b"\x01\x02" + make_frame(0xE0, 100) + b"\x03" + make_frame(0xA0, 2872))
        assert wait_for(lambda: len(received) == 2)
    finally:
        session.stop_acquisition()

    assert received[0][1] == pytest.approx(-194.8)
    assert received[1][1] == pytest.approx(82.4)
    assert all(len(vector) == 26 for vector in received)
    stats = session.stats()
    assert stats["frames"] == 2
    assert stats["skipped_bytes"] == 3
    assert stats["delivered"] == 2

    # nothing fires once stop has returned
    fake_serial.instance.feed(make_frame())
    time.sleep(0.1)
    assert len(received) == 2
    session.close()


def test_start_discards_stale_input(fake_serial):
    session = open_session()
    received: list[np.ndarray] = []
    session.subscribe(received.append)
    fake_serial.instance.feed(make_frame())
    session.start_acquisition()
    time.sleep(0.1)
    session.close()
    assert received == []


def test_failing_subscriber_does_not_block_others(fake_serial):
    session = open_session()
    received: list[np.ndarray] = []

    def broken(_vector):
        raise ValueError("consumer bug")

    session.subscribe(broken)
    session.subscribe(received.append)
    session.start_acquisition()
    fake_serial.instance.feed(make_frame())
    assert wait_for(lambda: len(received) == 1)
    session.stop_acquisition()
    assert session.stats()["callback_errors"] == 1
    session.unsubscribe(broken)
    session.close()


def test_loop_survives_read_errors(fake_serial):
    fake_serial.instance = FakeSerialInstance(read_failures=3)
    session = open_session()
    received: list[np.ndarray] = []
    session.subscribe(received.append)
    session.start_acquisition()
    fake_serial.instance.feed(make_frame())
    assert wait_for(lambda: len(received) == 1)
    assert session.stats()["read_errors"] == 3
    session.close()


def test_configuration_rejected_while_acquiring(fake_serial):
    session = open_session()
    session.start_acquisition()
    try:
        with pytest.raises(AcquisitionActiveError):
            session.set_reference(Reference.A1)
        with pytest.raises(AcquisitionActiveError):
            session.send_default_configuration()
    finally:
        session.stop_acquisition()
    assert session.set_reference(Reference.A1)
    session.close()


def test_close_stops_acquisition_and_releases_port(fake_serial):
    with open_session() as session:
        session.start_acquisition()
    assert session.state is SessionState.CLOSED
    assert not session.is_acquiring
    assert fake_serial.instance.is_open is False
    assert fake_serial.instance.writes == [b"\x90\x01", b"\x90\x02"]
    # second close is harmless
    session.close()


def _alive(name: str) -> bool:
    return any(t.name == name and t.is_alive() for t in threading.enumerate())


def test_configure_waits_with_new_device_settle_delay(fake_serial):
    delays: list[float] = []
    session = open_session(device=DeviceSetup(settle_delay_s=0.3), sleep=delays.append)
    session.configure(DeviceSetup(reference="A1", settle_delay_s=0.01))
    assert delays == [0.01] * 10
    assert session.device.settle_delay_s == 0.01
    session.close()


def test_close_stops_loop_after_port_disappears(fake_serial):
    session = open_session()
    session.start_acquisition()
    # unplugged device: pyserial reports the port closed underneath the session
    fake_serial.instance.is_open = False
    session.close()
    assert session.state is SessionState.CLOSED
    assert not session.is_acquiring
    assert fake_serial.instance.writes == [b"\x90\x01"]
    assert not _alive("kt88-acquisition")
    assert not _alive("kt88-dispatch")


def test_stop_from_subscriber_callback(fake_serial):
    session = open_session()
    seen: list[np.ndarray] = []

    def stop_after_first(vector):
        seen.append(vector)
        session.stop_acquisition()

    session.subscribe(stop_after_first)
    session.start_acquisition()
    fake_serial.instance.feed(make_frame())
    assert wait_for(lambda: session.state is SessionState.CONNECTED)
    assert not session.is_acquiring
    assert wait_for(lambda: not _alive("kt88-dispatch"))
    assert session.stats()["callback_errors"] == 0
    assert len(seen) == 1
    assert fake_serial.instance.writes == [b"\x90\x01", b"\x90\x02"]
    session.close()


def test_blocked_reader_prevents_second_loop(fake_serial):
    fake_serial.instance = FakeSerialInstance(timeout=0.5)
    session = open_session(runtime=AcquisitionRuntime(join_timeout_s=0.05, error_backoff_s=0.01))
    assert session.start_acquisition()
    time.sleep(0.05)
    session.stop_acquisition()  # reader is still inside a 0.5 s read
    assert session.state is SessionState.CONNECTED
    assert _alive("kt88-acquisition")

    assert session.start_acquisition() is False
    loops = [t for t in threading.enumerate() if t.name == "kt88-acquisition" and t.is_alive()]
    assert len(loops) == 1

    assert wait_for(lambda: not _alive("kt88-acquisition"))
    assert session.start_acquisition()
    session.close()
    assert wait_for(lambda: not _alive("kt88-acquisition"))
