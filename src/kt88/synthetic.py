"""Synthetic KT-88 byte streams for demos, replay checks and tests."""
from __future__ import annotations

import logging
from typing import Any, Iterator, Sequence

import numpy as np

from .frames import MARKERS, NUM_CHANNELS, PAYLOAD_LENGTH, FrameSynchronizer, decode_frame

logger = logging.getLogger(__name__)

# Bits each channel can carry on the wire. Even channels lose bits 7 and 11
# and odd channels lose bit 7, except channel 0 whose two missing bits travel
# in payload byte 0.
_EVEN_MASK = 0x77F
_ODD_MASK = 0xF7F
_CHANNEL0_MASK = 0xFFF


def channel_mask(channel: int) -> int:
    if channel == 0:
        return _CHANNEL0_MASK
    return _EVEN_MASK if channel % 2 == 0 else _ODD_MASK


def encode_frame(raw_values: Sequence[int], marker: int = 0xE0) -> bytes:
    """
    Pack 26 raw 12-bit values into one 46-byte frame.

    Raises ``ValueError`` for values outside 0-4095 and for bits the channel
    layout has no room for (see :func:`channel_mask`).
    """
    if marker not in MARKERS:
        raise ValueError(f"Marker must be one of {sorted(hex(m) for m in MARKERS)}, got {marker:#x}")
    if len(raw_values) != NUM_CHANNELS:
        raise ValueError(f"Expected {NUM_CHANNELS} raw values, got {len(raw_values)}")
    payload = bytearray(PAYLOAD_LENGTH)
    for channel, value in enumerate(raw_values):
        value = int(value)
        if not 0 <= value <= 0xFFF:
            raise ValueError(f"Channel {channel} raw value {value} outside 0-4095")
        if value & ~channel_mask(channel):
            raise ValueError(f"Channel {channel} cannot carry raw value {value:#05x} on the wire")
        group = 6 + 3 * (channel // 2)
        if channel % 2 == 0:
            payload[group] |= ((value >> 8) & 0x07) << 4
            payload[group + 1] = value & 0x7F
        else:
            payload[group] |= (value >> 8) & 0x0F
            payload[group + 2] = value & 0x7F
    payload[0] = ((raw_values[0] >> 11) & 0x01) | ((raw_values[0] >> 6) & 0x02)
    return bytes([marker]) + bytes(payload)


def representable(values: np.ndarray) -> np.ndarray:
    masks = np.array([channel_mask(ch) for ch in range(NUM_CHANNELS)], dtype=np.int64)
    return np.asarray(values, dtype=np.int64) & masks


def synthetic_stream(
    n_frames: int,
    *,
    seed: int = 42,
    sample_rate: float = 200.0,
    garbage_every: int = 10,
) -> bytes:
    """
    Build a raw capture: sinusoids (one frequency per channel) around raw
    1024, masked to what each channel can carry, alternating 0xE0/0xA0
    markers, with a few non-marker bytes injected between frames every
    ``garbage_every`` frames.
    """
    rng = np.random.default_rng(seed)
    t = np.arange(n_frames) / sample_rate
    freqs = np.linspace(1.0, 26.0, NUM_CHANNELS)
    amplitude = 300.0
    signal = 1024 + amplitude * np.sin(2 * np.pi * np.outer(t, freqs))
    signal += rng.normal(scale=5.0, size=signal.shape)
    raw = representable(np.clip(np.rint(signal), 0, 4095))

    chunks = []
    garbage_pool = np.array([b for b in range(0x80) if b not in MARKERS], dtype=np.uint8)
    for index, row in enumerate(raw):
        marker = 0xE0 if index % 2 == 0 else 0xA0
        chunks.append(encode_frame(row.tolist(), marker=marker))
        if garbage_every > 0 and index % garbage_every == garbage_every - 1:
            chunks.append(bytes(rng.choice(garbage_pool, size=int(rng.integers(1, 8))).tolist()))
    return b"".join(chunks)


def replay(handle: Any) -> Iterator[np.ndarray]:
    """Decode every frame of a finite capture (file object or pipe)."""
    synchronizer = FrameSynchronizer()
    for frame in synchronizer.iter_frames(handle):
        yield decode_frame(frame)
    stats = synchronizer.stats()
    logger.info(
        "Replay finished: frames=%d partial_frames=%d skipped_bytes=%d",
        stats["frames"],
        stats["partial_frames"],
        stats["skipped_bytes"],
    )
