from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional, Tuple

import numpy as np


FRAME_LENGTH = 46
PAYLOAD_LENGTH = FRAME_LENGTH - 1
MARKERS = frozenset((0xA0, 0xE0))
NUM_CHANNELS = 26
RAW_MIDSCALE = 2048
RAW_SCALE = 10.0

CHANNEL_LABELS: Tuple[str, ...] = (
    "Fp1", "Fp2", "F3", "F4", "C3", "C4",
    "P3", "P4", "O1", "O2", "F7", "F8",
    "T3", "T4", "T5", "T6", "Fz", "Pz",
    "Cz", "Pg1", "Pg2", "EOGR", "EOGL", "EMG", "BR", "ECG",
)

# Payload offsets of the channel-pair groups: one shared high-bits byte
# followed by the low 7 bits of the even and the odd channel.
_GROUP_START = 6
_GROUP_STRIDE = 3

logger = logging.getLogger(__name__)


def unpack_raw(payload: bytes) -> np.ndarray:
    """Extract the 26 raw 12-bit channel values from a 45-byte payload."""
    data = np.frombuffer(payload, dtype=np.uint8, count=PAYLOAD_LENGTH).astype(np.int32)
    high = data[_GROUP_START:PAYLOAD_LENGTH:_GROUP_STRIDE]
    low_even = data[_GROUP_START + 1:PAYLOAD_LENGTH:_GROUP_STRIDE]
    low_odd = data[_GROUP_START + 2:PAYLOAD_LENGTH:_GROUP_STRIDE]

    raw = np.zeros(NUM_CHANNELS, dtype=np.int32)
    raw[0::2] = ((high & 0x70) << 4) | (low_even & 0x7F)
    raw[1::2] = ((high & 0x0F) << 8) | (low_odd & 0x7F)
    # Channel 0 has no earlier byte to borrow from; its missing bits ride in payload[0].
    raw[0] |= ((payload[0] & 0x01) << 11) | ((payload[0] & 0x02) << 6)
    return raw


def calibrate(raw: np.ndarray) -> np.ndarray:
    return (np.asarray(raw, dtype=np.float64) - RAW_MIDSCALE) / RAW_SCALE


def decode_frame(frame: bytes) -> np.ndarray:
    """
    Decode one raw frame (marker + 45 payload bytes) into 26 calibrated values.

    A buffer shorter than a full frame yields an all-zero vector instead of
    raising; use :func:`is_complete_frame` to tell such input apart.
    """
    if not is_complete_frame(frame):
        logger.debug("Short frame (%d bytes), returning zero vector", len(frame))
        return np.zeros(NUM_CHANNELS, dtype=np.float64)
    return calibrate(unpack_raw(bytes(frame[1:FRAME_LENGTH])))


def is_complete_frame(frame: bytes) -> bool:
    return len(frame) >= FRAME_LENGTH


class FrameSynchronizer:
    """
    Turns a continuous byte stream into 46-byte frames.

    The stream is scanned one byte at a time for a marker (0xA0 or 0xE0); a
    marker is followed by a greedy read of the 45 payload bytes. A short read
    drops the partial frame and scanning resumes with the next byte, so a
    misaligned frame heals itself at the next real marker.
    """

    def __init__(self) -> None:
        self._stats: Dict[str, int] = {"frames": 0, "partial_frames": 0, "skipped_bytes": 0}
        self._log = logging.getLogger(__name__)

    def read_frame(self, handle: Any) -> Optional[bytes]:
        """
        One synchronisation attempt against a live transport.

        Returns ``None`` on read timeout, on a non-marker byte, and on a
        partial frame; all three are routine and the caller simply retries.
        """
        first = handle.read(1)
        if not first:
            return None
        return self._complete(first, handle)

    def iter_frames(self, handle: Any) -> Iterator[bytes]:
        """Yield every frame of a finite stream (capture file, pipe) until EOF."""
        while True:
            first = handle.read(1)
            if not first:
                return
            frame = self._complete(first, handle)
            if frame is not None:
                yield frame

    def _complete(self, first: bytes, handle: Any) -> Optional[bytes]:
        if first[0] not in MARKERS:
            self._stats["skipped_bytes"] += 1
            return None
        rest = handle.read(PAYLOAD_LENGTH)
        if len(rest) < PAYLOAD_LENGTH:
            self._stats["partial_frames"] += 1
            self._log.debug("Discarding partial frame (%d of %d payload bytes)", len(rest), PAYLOAD_LENGTH)
            return None
        self._stats["frames"] += 1
        return bytes(first) + bytes(rest)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        for key in self._stats:
            self._stats[key] = 0
