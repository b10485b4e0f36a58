from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Tuple


OP_CONTROL = 0x90
OP_REFERENCE = 0x91
OP_MONTAGE = 0x92
OP_PRIME_A = 0x80
OP_PRIME_B = 0x81

CTRL_START = 0x01
CTRL_STOP = 0x02
CTRL_HANDSHAKE = 0x09


class Reference(enum.IntEnum):
    AA = 0x01  # linked earlobes
    A1 = 0x02
    A2 = 0x03
    AVG = 0x04
    CZ = 0x05
    BN = 0x06  # balanced non-cephalic


class Montage(enum.IntEnum):
    MONTAGE_1 = 0x01
    MONTAGE_2 = 0x02
    MONTAGE_3 = 0x03
    MONTAGE_4 = 0x04
    MONTAGE_5 = 0x05
    MONTAGE_6 = 0x06
    MONTAGE_7 = 0x07
    MONTAGE_8 = 0x08
    MONTAGE_9 = 0x09


class HardwareFilter(enum.IntEnum):
    ENABLE = 0x03  # 0.5 - 35 Hz band
    DISABLE = 0x04


class ImpedanceMode(enum.IntEnum):
    START = 0x05
    STOP = 0x06


def encode(opcode: int, operand: int) -> bytes:
    for name, value in (("opcode", opcode), ("operand", operand)):
        if not 0 <= int(value) <= 0xFF:
            raise ValueError(f"{name} must fit in one byte, got {value!r}")
    return bytes((int(opcode), int(operand)))


@dataclass(frozen=True)
class Command:
    """Two-byte device command: ``[opcode, operand]``, no framing or checksum."""

    opcode: int
    operand: int
    name: str = field(default="", compare=False)

    def __bytes__(self) -> bytes:
        return encode(self.opcode, self.operand)

    def __str__(self) -> str:
        label = f" ({self.name})" if self.name else ""
        return f"{self.opcode:02X} {self.operand:02X}{label}"


def start_acquisition() -> Command:
    return Command(OP_CONTROL, CTRL_START, "start")


def stop_acquisition() -> Command:
    return Command(OP_CONTROL, CTRL_STOP, "stop")


def set_reference(reference: Reference) -> Command:
    reference = Reference(reference)
    return Command(OP_REFERENCE, int(reference), f"reference {reference.name}")


def set_montage(montage: Montage) -> Command:
    montage = Montage(montage)
    return Command(OP_MONTAGE, int(montage), f"montage {int(montage)}")


def set_hardware_filter(mode: HardwareFilter) -> Command:
    mode = HardwareFilter(mode)
    return Command(OP_CONTROL, int(mode), f"hardware filter {mode.name.lower()}")


def set_impedance(mode: ImpedanceMode) -> Command:
    mode = ImpedanceMode(mode)
    return Command(OP_CONTROL, int(mode), f"impedance {mode.name.lower()}")


# Default state as set by the vendor's acquisition software.
DEFAULT_CONFIGURATION: Tuple[Command, ...] = (
    stop_acquisition(),
    Command(OP_PRIME_A, 0x00, "buffer prime A"),
    Command(OP_PRIME_B, 0x00, "buffer prime B"),
    set_reference(Reference.AA),
    Command(OP_CONTROL, CTRL_HANDSHAKE, "handshake"),
    set_hardware_filter(HardwareFilter.ENABLE),
    set_impedance(ImpedanceMode.STOP),
)


def parse_reference(name: str) -> Reference:
    try:
        return Reference[name.strip().upper()]
    except KeyError as exc:
        raise ValueError(f"Unknown reference '{name}'. Expected one of {[r.name for r in Reference]}") from exc


def parse_montage(value: int | str) -> Montage:
    try:
        return Montage(int(value))
    except ValueError as exc:
        raise ValueError(f"Montage must be 1-9, got {value!r}") from exc
