"""Command line interface for the KT-88 driver."""
from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

import typer
from serial.tools import list_ports

from .commands import ImpedanceMode
from .config import DriverConfig, config_summary, load_config
from .recording import CsvRecorder
from .session import Session
from .synthetic import replay as replay_stream
from .synthetic import synthetic_stream

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

app = typer.Typer(add_completion=False, help="Contec KT-88 EEG amplifier utilities.")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _build_config(
    config_path: Optional[Path],
    port: Optional[str],
    override: Optional[List[str]],
) -> DriverConfig:
    overrides = list(override or [])
    if port:
        overrides.insert(0, f"serial.port={port}")
    try:
        return load_config(config_path, overrides or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc


def _open_session(config: DriverConfig) -> Session:
    session = Session.from_config(config)
    if not session.open():
        typer.echo(f"Could not open {config.serial.port}", err=True)
        raise typer.Exit(code=1)
    return session


_PORT_OPTION = typer.Option(None, "--port", "-p", help="Serial device (overrides config).")
_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="JSON driver configuration.")
_SET_OPTION = typer.Option(None, "--set", help="Override config keys, e.g. --set device.reference=AVG")


@app.command()
def ports() -> None:
    """List serial ports visible to the host."""
    found = sorted(list_ports.comports(), key=lambda info: info.device)
    if not found:
        typer.echo("No serial ports found")
        return
    for info in found:
        typer.echo(f"{info.device}\t{info.description}")


@app.command()
def configure(
    port: Optional[str] = _PORT_OPTION,
    config_path: Optional[Path] = _CONFIG_OPTION,
    override: Optional[List[str]] = _SET_OPTION,
) -> None:
    """Send the default configuration, then the configured reference, montage and filter."""
    cfg = _build_config(config_path, port, override)
    with _open_session(cfg) as session:
        session.configure(cfg.device)
    summary = config_summary(cfg)
    typer.echo(" ".join(f"{key}={value}" for key, value in summary.items()))


@app.command()
def impedance(
    port: Optional[str] = _PORT_OPTION,
    config_path: Optional[Path] = _CONFIG_OPTION,
    duration: float = typer.Option(30.0, "--duration", "-d", help="Seconds to keep the impedance check running."),
    override: Optional[List[str]] = _SET_OPTION,
) -> None:
    """Run the on-device impedance check (electrode LEDs turn green when contact is good)."""
    cfg = _build_config(config_path, port, override)
    with _open_session(cfg) as session:
        session.set_impedance(ImpedanceMode.START)
        typer.echo(f"Impedance check running for {duration:.0f}s (Ctrl+C to end early)")
        try:
            time.sleep(max(duration, 0.0))
        except KeyboardInterrupt:
            logger.info("Impedance check interrupted")
        finally:
            session.set_impedance(ImpedanceMode.STOP)


@app.command()
def record(
    port: Optional[str] = typer.Option(
        None, "--port", "-p", help="Serial device. Use '-' to decode a raw capture from stdin."
    ),
    config_path: Optional[Path] = _CONFIG_OPTION,
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output CSV (defaults to config output_csv)."),
    duration: float = typer.Option(0.0, "--duration", "-d", help="Stop after N seconds (0 = until Ctrl+C)."),
    skip_configure: bool = typer.Option(False, "--skip-configure", help="Do not send the configuration sequence."),
    override: Optional[List[str]] = _SET_OPTION,
) -> None:
    """Acquire channel vectors and write them to CSV."""
    if port == "-":
        cfg = _build_config(config_path, None, override)
        target = out or cfg.output_csv
        if target is None:
            raise typer.BadParameter("--out is required when no output_csv is configured")
        count = _decode_to_csv(sys.stdin.buffer, target, {"source": "stdin"})
        typer.echo(f"Decoded {count} frames from stdin to {target}")
        return

    cfg = _build_config(config_path, port, override)
    target = out or cfg.output_csv
    if target is None:
        raise typer.BadParameter("--out is required when no output_csv is configured")
    recorder = CsvRecorder(target)
    recorder.set_metadata(config_summary(cfg))
    session = _open_session(cfg)
    session.subscribe(recorder)
    interval = max(cfg.acquisition.stats_log_interval_s, 1.0)
    try:
        if not skip_configure:
            session.configure(cfg.device)
        session.start_acquisition()
        started = time.monotonic()
        next_log = started + interval
        while duration <= 0 or time.monotonic() - started < duration:
            time.sleep(0.1)
            if time.monotonic() >= next_log:
                logger.info("rows=%d %s", recorder.rows, _stats_line(session.stats()))
                recorder.flush()
                next_log = time.monotonic() + interval
    except KeyboardInterrupt:
        logger.info("Stopping acquisition (Ctrl+C)")
    finally:
        session.close()
        session.unsubscribe(recorder)
        recorder.close()
    typer.echo(f"Recorded {recorder.rows} vectors to {target}")


@app.command()
def replay(
    input_path: Path = typer.Option(..., "--in", help="Raw capture file.", exists=True, readable=True),
    out: Path = typer.Option(..., "--out", "-o", help="Output CSV."),
) -> None:
    """Decode a raw byte capture into a CSV recording."""
    with input_path.open("rb") as handle:
        count = _decode_to_csv(handle, out, {"source": input_path.name})
    typer.echo(f"Decoded {count} frames from {input_path} to {out}")


@app.command()
def demo(
    out: Path = typer.Option(Path("demo_capture.bin"), "--out", "-o", help="Destination raw capture."),
    frames: int = typer.Option(1000, "--frames", "-n", help="Number of frames to synthesise."),
    seed: int = typer.Option(42, "--seed", help="Random seed."),
) -> None:
    """Write a synthetic raw capture that `replay` (or `record --port -`) can decode."""
    if frames < 1:
        raise typer.BadParameter("--frames must be positive")
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(synthetic_stream(frames, seed=seed))
    typer.echo(f"Wrote {frames} synthetic frames to {out}")


def _decode_to_csv(handle, target: Path, metadata) -> int:
    recorder = CsvRecorder(target, clock=_FrameClock())
    recorder.set_metadata(metadata)
    try:
        for vector in replay_stream(handle):
            recorder.append(vector)
    finally:
        recorder.close()
    return recorder.rows


class _FrameClock:
    """Replayed captures carry no host timing; number rows by frame index instead."""

    def __init__(self) -> None:
        self._ticks = -1

    def __call__(self) -> float:
        self._ticks += 1
        return float(self._ticks)


def _stats_line(stats) -> str:
    keys = ("frames", "partial_frames", "skipped_bytes", "dropped", "read_errors")
    return " ".join(f"{key}={stats.get(key, 0)}" for key in keys)


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
