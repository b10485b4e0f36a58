"""Protocol driver for the Contec KT-88 multi-channel EEG amplifier."""

from importlib.metadata import PackageNotFoundError, version

from .commands import Command, HardwareFilter, ImpedanceMode, Montage, Reference
from .frames import CHANNEL_LABELS, FrameSynchronizer, decode_frame
from .session import AcquisitionActiveError, Session, SessionState

try:  # pragma: no cover - fallback when package metadata missing
    __version__ = version("kt88-driver")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "CHANNEL_LABELS",
    "AcquisitionActiveError",
    "Command",
    "FrameSynchronizer",
    "HardwareFilter",
    "ImpedanceMode",
    "Montage",
    "Reference",
    "Session",
    "SessionState",
    "decode_frame",
]
