from __future__ import annotations

import io

import numpy as np

from kt88.frames import FrameSynchronizer, decode_frame


def make_frame(marker: int, seed: int) -> bytes:
    # payload bytes stay below 0x80 like the device's, so none can look like a marker
    rng = np.random.default_rng(seed)
    return bytes([marker]) + bytes(rng.integers(0, 0x80, size=45, dtype=np.uint8).tolist())


def test_recovers_frames_between_garbage():
    first = make_frame(0xE0, 1)
    second = make_frame(0xA0, 2)
    stream = io.BytesIO(b"\x01\x02\x7f\x55" + first + b"\x10\x11" + second + b"\x33")
    sync = FrameSynchronizer()

    frames = list(sync.iter_frames(stream))

    assert frames == [first, second]
    stats = sync.stats()
    assert stats["frames"] == 2
    assert stats["skipped_bytes"] == 7
    assert stats["partial_frames"] == 0


def test_read_frame_returns_none_on_timeout():
    sync = FrameSynchronizer()
    assert sync.read_frame(io.BytesIO(b"")) is None
    assert sync.stats() == {"frames": 0, "partial_frames": 0, "skipped_bytes": 0}


def test_read_frame_single_attempts():
    frame = make_frame(0xE0, 3)
    stream = io.BytesIO(b"\x42" + frame)
    sync = FrameSynchronizer()
    assert sync.read_frame(stream) is None  # garbage byte consumed
    assert sync.read_frame(stream) == frame
    assert sync.read_frame(stream) is None


def test_partial_frame_is_discarded():
    stream = io.BytesIO(b"\xe0" + bytes(20))
    sync = FrameSynchronizer()
    assert list(sync.iter_frames(stream)) == []
    assert sync.stats()["partial_frames"] == 1


def test_misalignment_heals_at_next_marker():
    truncated = make_frame(0xA0, 4)[:21]
    lost = make_frame(0xE0, 5)
    good = make_frame(0xA0, 6)
    sync = FrameSynchronizer()

    frames = list(sync.iter_frames(io.BytesIO(truncated + lost + good)))

    # the truncated frame swallows the head of the next one; the rest of it is
    # skipped byte by byte until the following marker
    assert len(frames) == 2
    assert frames[0] == truncated + lost[:25]
    assert frames[1] == good
    assert np.array_equal(decode_frame(frames[1]), decode_frame(good))


def test_reset_clears_counters():
    sync = FrameSynchronizer()
    list(sync.iter_frames(io.BytesIO(b"\x00\x01" + make_frame(0xE0, 8))))
    sync.reset()
    assert sync.stats() == {"frames": 0, "partial_frames": 0, "skipped_bytes": 0}
