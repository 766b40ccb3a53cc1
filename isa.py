"""ISA: opcodes, operand counts, value space and program image codec."""

import struct
from enum import IntEnum

WORD_MOD = 32768  # all arithmetic is modulo 2**15
WORD_MASK = 0x7FFF
MEM_CELLS = 32768
REG_BASE = 32768  # 32768..32775 denote r0..r7
REG_COUNT = 8
MAX_VALUE = REG_BASE + REG_COUNT - 1


class OpCode(IntEnum):
    """Keeps opcodes from all operations."""

    HALT = 0
    SET = 1  # a = b
    PUSH = 2
    POP = 3
    EQ = 4  # a = b == c
    GT = 5  # a = b > c
    JMP = 6
    JT = 7  # jump to b if a != 0
    JF = 8  # jump to b if a == 0
    ADD = 9
    MULT = 10
    MOD = 11
    AND = 12
    OR = 13
    NOT = 14
    RMEM = 15  # a = MEM[b]
    WMEM = 16  # MEM[a] = b
    CALL = 17
    RET = 18
    OUT = 19
    IN = 20
    NOOP = 21


ARITY: dict[OpCode, int] = {
    OpCode.HALT: 0,
    OpCode.SET: 2,
    OpCode.PUSH: 1,
    OpCode.POP: 1,
    OpCode.EQ: 3,
    OpCode.GT: 3,
    OpCode.JMP: 1,
    OpCode.JT: 2,
    OpCode.JF: 2,
    OpCode.ADD: 3,
    OpCode.MULT: 3,
    OpCode.MOD: 3,
    OpCode.AND: 3,
    OpCode.OR: 3,
    OpCode.NOT: 2,
    OpCode.RMEM: 2,
    OpCode.WMEM: 2,
    OpCode.CALL: 1,
    OpCode.RET: 0,
    OpCode.OUT: 1,
    OpCode.IN: 1,
    OpCode.NOOP: 0,
}


def decode_op(word: int) -> OpCode:
    """Map an opcode word to an OpCode.

    Raises ValueError if no operation has this number.
    """
    return OpCode(word)


def is_register(value: int) -> bool:
    """Return True if `value` is a register reference (32768..32775)."""
    return REG_BASE <= value <= MAX_VALUE


def register_index(value: int) -> int:
    """Return register number 0..7 for a register reference."""
    if not is_register(value):
        err = f"{value} is not a register reference"
        raise ValueError(err)
    return value - REG_BASE


def _operand_text(value: int) -> str:
    if is_register(value):
        return f"r{value - REG_BASE}"
    return str(value)


def mnemonic(opcode: OpCode, operands: list[int] | tuple[int, ...]) -> str:
    """Get operation mnemonic with its operands (used by the trace log)."""
    if not operands:
        return opcode.name
    return opcode.name + " " + " ".join(_operand_text(v) for v in operands)


def load_image(blob: bytes) -> list[int]:
    """Decode a program image into exactly MEM_CELLS words.

    Each word is a little-endian pair of bytes. The result is zero-padded.
    Raises ValueError on an odd byte count and MemoryError when the image
    doesn't fit into memory.
    """
    if len(blob) % 2:
        err = f"Program image has odd length ({len(blob)} bytes)"
        raise ValueError(err)
    count = len(blob) // 2
    if count > MEM_CELLS:
        err = f"Program image doesn't fit into memory ({count} words)"
        raise MemoryError(err)
    words = list(struct.unpack(f"<{count}H", blob))
    words.extend([0] * (MEM_CELLS - count))
    return words


def encode_image(words: list[int]) -> bytes:
    """Encode words as little-endian 16-bit pairs (inverse of load_image)."""
    return struct.pack(f"<{len(words)}H", *(int(w) & 0xFFFF for w in words))
