from __future__ import annotations

import dataclasses
import enum
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import serial

from . import commands
from .commands import DEFAULT_CONFIGURATION, Command, HardwareFilter, ImpedanceMode, Montage, Reference
from .config import AcquisitionRuntime, DeviceSetup, DriverConfig, SerialSettings
from .frames import FrameSynchronizer, decode_frame

logger = logging.getLogger(__name__)

SampleCallback = Callable[[np.ndarray], None]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    ACQUIRING = "acquiring"
    CLOSED = "closed"


class AcquisitionActiveError(RuntimeError):
    """Raised when a configuration command is issued while frames are streaming."""


class AcquisitionThread(threading.Thread):
    """
    Background reader: synchronises frames off the transport, decodes them and
    publishes the channel vectors into a bounded queue.

    The loop never ends on its own. Read timeouts are how it notices
    :meth:`stop`; transport errors are logged and retried after a short pause.
    """

    def __init__(
        self,
        handle: Any,
        sample_queue: "queue.Queue[np.ndarray]",
        runtime: AcquisitionRuntime,
    ) -> None:
        super().__init__(name="kt88-acquisition", daemon=True)
        self.handle = handle
        self.queue = sample_queue
        self.runtime = runtime
        self.synchronizer = FrameSynchronizer()
        self._stop_event = threading.Event()
        self._published = 0
        self._dropped = 0
        self._read_errors = 0
        self.last_exception: Optional[Exception] = None
        self._log = logging.getLogger(__name__)

    def run(self) -> None:
        in_error = False
        while not self._stop_event.is_set():
            try:
                frame = self.synchronizer.read_frame(self.handle)
            except Exception as exc:
                self.last_exception = exc
                self._read_errors += 1
                if not in_error:
                    self._log.warning("Serial read failed, retrying: %s", exc)
                    in_error = True
                else:
                    self._log.debug("Serial read still failing: %s", exc)
                self._stop_event.wait(self.runtime.error_backoff_s)
                continue
            in_error = False
            if frame is None:
                continue
            self._publish(decode_frame(frame))

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stats(self) -> Dict[str, int]:
        stats = self.synchronizer.stats()
        stats["published"] = self._published
        stats["dropped"] = self._dropped
        stats["read_errors"] = self._read_errors
        return stats

    def _publish(self, vector: np.ndarray) -> None:
        try:
            self.queue.put_nowait(vector)
        except queue.Full:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 1000 == 0:
                self._log.warning("Sample queue full (%d), dropped %d vectors so far", self.queue.qsize(), self._dropped)
            return
        self._published += 1


class SampleDispatcher(threading.Thread):
    """Drains the sample queue into the session's subscriber callbacks, in order."""

    def __init__(
        self,
        sample_queue: "queue.Queue[np.ndarray]",
        subscribers: Callable[[], List[SampleCallback]],
        poll_interval: float = 0.05,
    ) -> None:
        super().__init__(name="kt88-dispatch", daemon=True)
        self.queue = sample_queue
        self._subscribers = subscribers
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._delivered = 0
        self._callback_errors = 0

    def run(self) -> None:
        while True:
            try:
                vector = self.queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._stop_event.is_set():
                    break
                continue
            self._deliver(vector)

    def stop(self) -> None:
        self._stop_event.set()

    def stats(self) -> Dict[str, int]:
        return {"delivered": self._delivered, "callback_errors": self._callback_errors}

    def _deliver(self, vector: np.ndarray) -> None:
        for callback in self._subscribers():
            try:
                callback(vector)
            except Exception:
                self._callback_errors += 1
                logger.exception("Sample callback %r failed", callback)
        self._delivered += 1


class Session:
    """
    Connection to one KT-88 amplifier.

    Lifecycle: IDLE -> CONNECTED (:meth:`open`) -> ACQUIRING
    (:meth:`start_acquisition`) -> CONNECTED (:meth:`stop_acquisition`) ->
    CLOSED (:meth:`close`). Commands, configuration and lifecycle calls run on
    the caller's thread; only frame reading and callback dispatch run in the
    background.
    """

    def __init__(
        self,
        settings: Optional[SerialSettings] = None,
        runtime: Optional[AcquisitionRuntime] = None,
        device: Optional[DeviceSetup] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or SerialSettings()
        self.runtime = runtime or AcquisitionRuntime()
        self.device = device or DeviceSetup()
        self._sleep = sleep
        self._handle: Any = None
        self._state = SessionState.IDLE
        self._write_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()
        self._subscribers: List[SampleCallback] = []
        self._subscribers_lock = threading.Lock()
        self._queue: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=self.runtime.queue_maxsize)
        self._reader: Optional[AcquisitionThread] = None
        self._dispatcher: Optional[SampleDispatcher] = None
        self._stale_reader: Optional[AcquisitionThread] = None
        self._last_stats: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: DriverConfig, **kwargs: Any) -> "Session":
        return cls(settings=config.serial, runtime=config.acquisition, device=config.device, **kwargs)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._handle is not None and bool(getattr(self._handle, "is_open", True))

    @property
    def is_acquiring(self) -> bool:
        return self._reader is not None and self._reader.is_alive()

    # -- connection -------------------------------------------------------

    def open(self, port: Optional[str] = None) -> bool:
        """Open the serial port. Returns ``False`` (and logs) instead of raising on failure."""
        with self._lifecycle_lock:
            if self.is_open:
                return True
            if port:
                self.settings = dataclasses.replace(self.settings, port=port)
            try:
                self._handle = serial.Serial(
                    port=self.settings.port,
                    baudrate=self.settings.baudrate,
                    bytesize=self.settings.bytesize,
                    parity=self.settings.parity,
                    stopbits=self.settings.stopbits,
                    timeout=self.settings.timeout,
                    write_timeout=self.settings.write_timeout,
                    xonxoff=False,
                    rtscts=False,
                    dsrdtr=False,
                )
            except (serial.SerialException, OSError, ValueError) as exc:
                logger.error("Failed to open %s: %s", self.settings.port, exc)
                self._handle = None
                return False
            if not self.is_open:
                logger.error("Port %s did not report open", self.settings.port)
                self._handle = None
                return False
            self._state = SessionState.CONNECTED
            logger.info("Connected to %s at %d baud", self.settings.port, self.settings.baudrate)
            return True

    def close(self) -> None:
        with self._lifecycle_lock:
            if self._state is SessionState.CLOSED:
                return
            # send() drops the stop command on a dead port; the loop is stopped regardless
            if self.is_open or self._reader is not None:
                self.stop_acquisition()
            handle, self._handle = self._handle, None
            if handle is not None:
                try:
                    handle.close()
                except Exception as exc:
                    logger.warning("Error closing %s: %s", self.settings.port, exc)
            self._state = SessionState.CLOSED
            logger.info("Session on %s closed", self.settings.port)

    # -- commands ---------------------------------------------------------

    def send(self, command: Command) -> bool:
        """
        Write one command. Skipped silently on a closed session; write errors
        are logged and swallowed since the device never acknowledges anyway.
        """
        handle = self._handle
        if handle is None or not getattr(handle, "is_open", True):
            logger.debug("Session not open, skipping command %s", command)
            return False
        try:
            with self._write_lock:
                handle.write(bytes(command))
        except Exception as exc:
            logger.error("Sending %s failed: %s", command, exc)
            return False
        logger.debug("Sent %s", command)
        return True

    def set_reference(self, reference: Reference) -> bool:
        self._require_not_acquiring("set reference")
        return self.send(commands.set_reference(reference))

    def set_montage(self, montage: Montage) -> bool:
        self._require_not_acquiring("set montage")
        return self.send(commands.set_montage(montage))

    def set_hardware_filter(self, mode: HardwareFilter) -> bool:
        self._require_not_acquiring("set hardware filter")
        return self.send(commands.set_hardware_filter(mode))

    def set_impedance(self, mode: ImpedanceMode) -> bool:
        self._require_not_acquiring("set impedance mode")
        return self.send(commands.set_impedance(mode))

    def send_default_configuration(self) -> None:
        """
        Run the vendor default sequence: stop, buffer priming, AA reference,
        handshake, filter on, impedance off, each followed by the settle
        delay, then flush both transport buffers. Blocks for roughly 2 s.
        """
        self._require_not_acquiring("send default configuration")
        delay = self.device.settle_delay_s
        for command in DEFAULT_CONFIGURATION:
            self.send(command)
            self._sleep(delay)
        self.discard_buffers()
        logger.info("Default configuration sent to %s", self.settings.port)

    def configure(self, device: Optional[DeviceSetup] = None) -> None:
        """Default sequence, then the reference/montage/filter of ``device``."""
        self._require_not_acquiring("configure")
        if device is not None:
            self.device = device
        device = self.device
        self.send_default_configuration()
        for command in (
            commands.set_reference(device.reference_enum),
            commands.set_montage(device.montage_enum),
            commands.set_hardware_filter(device.filter_enum),
        ):
            self.send(command)
            self._sleep(device.settle_delay_s)

    def discard_buffers(self) -> None:
        handle = self._handle
        if handle is None or not getattr(handle, "is_open", True):
            return
        try:
            handle.reset_input_buffer()
            handle.reset_output_buffer()
        except Exception as exc:
            logger.warning("Could not flush buffers on %s: %s", self.settings.port, exc)

    # -- acquisition ------------------------------------------------------

    def subscribe(self, callback: SampleCallback) -> None:
        with self._subscribers_lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: SampleCallback) -> None:
        with self._subscribers_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def start_acquisition(self) -> bool:
        """
        Start the background loop (once) and send the device start command.

        Returns ``False`` when the session is not open.
        """
        with self._lifecycle_lock:
            if not self.is_open:
                logger.warning("Cannot start acquisition: %s is not open", self.settings.port)
                return False
            stale = self._stale_reader
            if stale is not None and stale.is_alive():
                logger.warning("Previous acquisition thread is still blocked in a read; not starting another")
                return False
            self._stale_reader = None
            if not self.is_acquiring:
                self.discard_buffers()
                self._drain_queue()
                self._dispatcher = SampleDispatcher(self._queue, self._snapshot_subscribers)
                self._reader = AcquisitionThread(self._handle, self._queue, self.runtime)
                self._dispatcher.start()
                self._reader.start()
                self._state = SessionState.ACQUIRING
                logger.info("Acquisition started on %s", self.settings.port)
            self.send(commands.start_acquisition())
            return True

    def stop_acquisition(self) -> None:
        """
        Send the device stop command and, if the loop runs, stop it and wait
        (bounded by ``join_timeout_s``) for it and the dispatcher to exit.
        """
        with self._lifecycle_lock:
            self.send(commands.stop_acquisition())
            reader, self._reader = self._reader, None
            dispatcher, self._dispatcher = self._dispatcher, None
            if reader is None:
                return
            timeout = self.runtime.join_timeout_s
            reader.stop()
            if not _joined(reader, timeout):
                logger.warning("Acquisition thread did not exit within %.1fs", timeout)
                self._stale_reader = reader
            if dispatcher is not None:
                dispatcher.stop()
                # a subscriber may stop acquisition from its own callback; the
                # dispatcher then exits on its own once that callback returns
                if dispatcher is not threading.current_thread() and not _joined(dispatcher, timeout):
                    logger.warning("Sample dispatcher did not exit within %.1fs", timeout)
            self._last_stats = self._collect_stats(reader, dispatcher)
            if self._state is SessionState.ACQUIRING:
                self._state = SessionState.CONNECTED
            logger.info("Acquisition stopped: %s", _format_stats(self._last_stats))

    def stats(self) -> Dict[str, int]:
        reader = self._reader
        if reader is None:
            return dict(self._last_stats)
        return self._collect_stats(reader, self._dispatcher)

    def _collect_stats(self, reader: AcquisitionThread, dispatcher: Optional[SampleDispatcher]) -> Dict[str, int]:
        stats = reader.stats()
        if dispatcher is not None:
            stats.update(dispatcher.stats())
        return stats

    def _snapshot_subscribers(self) -> List[SampleCallback]:
        with self._subscribers_lock:
            return list(self._subscribers)

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _require_not_acquiring(self, action: str) -> None:
        if self.is_acquiring:
            raise AcquisitionActiveError(f"Cannot {action} while acquisition is running; stop acquisition first")


def _joined(thread: threading.Thread, timeout: float) -> bool:
    thread.join(timeout)
    return not thread.is_alive()


def _format_stats(stats: Dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(stats.items()))
