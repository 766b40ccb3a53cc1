"""Processor (Datapath + ControlUnit), checkpoint/rewind and CLI wrapper.

Provides VM execution with line-based console input, snapshotting of the
machine state at every input request and rewinding to an earlier snapshot
when the program tries to terminate or the operator asks for it.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TextIO

from config import ConfigError, load_config, load_script
from isa import (
    ARITY,
    MEM_CELLS,
    REG_COUNT,
    WORD_MASK,
    WORD_MOD,
    OpCode,
    decode_op,
    is_register,
    load_image,
    mnemonic,
    register_index,
)

LOGFILE = "processor.log"


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    # always create a FileHandler even when not debug to allow easier inspection if asked
    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if debug and console:
        # console output of the VM goes to stdout, so logs go to stderr
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


# ---------- Errors ----------
class VMError(RuntimeError):
    """Base class for all conditions raised by the VM."""


class DecodeError(VMError):
    """Unknown opcode, malformed operand or truncated instruction."""


class StackUnderflow(VMError):
    """POP on an empty stack."""


class VMArithmeticError(VMError, ArithmeticError):
    """Modulo by zero."""


class TerminalOutcome(VMError):
    """HALT or RET on an empty stack: the program wants to stop."""

    def __init__(self, reason: str, cursor: int) -> None:
        """Remember which instruction (and where) ended the program."""
        super().__init__(f"{reason} at {cursor}")
        self.reason = reason
        self.cursor = cursor


class VoluntaryAbort(VMError):
    """Operator asked to stop (`halt`) or interactive input ended."""


class HistoryExhausted(VMError):
    """No snapshot left to rewind to."""


# ---------- Machine state ----------
@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of the whole machine state taken at an input request."""

    cursor: int
    memory: tuple[int, ...]
    registers: tuple[int, ...]
    stack: tuple[int, ...]
    output_buffer: tuple[str, ...]
    input_queue: tuple[int, ...]


class Datapath:
    """Datapath (memory + registers + stack + I/O buffers) for the VM."""

    cursor: int
    memory: list[int]
    registers: list[int]
    stack: list[int]
    output_buffer: list[str]
    input_queue: list[int]

    def __init__(self, image: list[int] | None = None) -> None:
        """Initialize state from a program image, zero-padded to MEM_CELLS words."""
        words = list(image or [])
        if len(words) > MEM_CELLS:
            err = f"Program doesn't fit into memory ({len(words)} words)"
            raise MemoryError(err)
        self.memory = words + [0] * (MEM_CELLS - len(words))
        self.registers = [0] * REG_COUNT
        self.stack = []
        self.cursor = 0
        self.output_buffer = []
        self.input_queue = []

    # --- operand helpers ---
    def fetch(self, offset: int) -> int:
        """Read the word at cursor + offset (opcode is offset 0)."""
        addr = self.cursor + offset
        if not 0 <= addr < MEM_CELLS:
            err = f"Truncated instruction at {self.cursor}"
            raise DecodeError(err)
        return self.memory[addr]

    def resolve(self, value: int) -> int:
        """Return register contents for a register reference, else the literal."""
        if value < WORD_MOD:
            return value
        if is_register(value):
            return self.registers[register_index(value)]
        err = f"Invalid operand {value} at {self.cursor}"
        raise DecodeError(err)

    def reg_write(self, target: int, value: int) -> None:
        """Store value into the register referenced by `target`."""
        if not is_register(target):
            err = f"Operand {target} at {self.cursor} is not a register"
            raise DecodeError(err)
        self.registers[register_index(target)] = value

    def read_word(self, addr: int) -> int:
        """Read a memory word. Raises MemoryError for out-of-range accesses."""
        if not 0 <= addr < MEM_CELLS:
            err = f"read_word out of memory: word {addr}"
            raise MemoryError(err)
        return self.memory[addr]

    def write_word(self, addr: int, value: int) -> None:
        """Write a memory word. Raises MemoryError for out-of-range writes."""
        if not 0 <= addr < MEM_CELLS:
            err = f"write_word out of memory: word {addr}"
            raise MemoryError(err)
        self.memory[addr] = value

    # --- input ---
    def queue_line(self, line: str) -> None:
        """Queue all character codes of `line` followed by a newline.

        Raises ValueError if a character code does not fit in a word.
        """
        codes = [ord(ch) for ch in line]
        for code in codes:
            if code > WORD_MASK:
                err = f"character U+{code:04X} does not fit in a word"
                raise ValueError(err)
        self.input_queue.extend(codes)
        self.input_queue.append(10)

    # --- snapshots ---
    def snapshot(self) -> Snapshot:
        """Copy the full state into an immutable Snapshot."""
        return Snapshot(
            cursor=self.cursor,
            memory=tuple(self.memory),
            registers=tuple(self.registers),
            stack=tuple(self.stack),
            output_buffer=tuple(self.output_buffer),
            input_queue=tuple(self.input_queue),
        )

    @classmethod
    def from_snapshot(cls, snap: Snapshot, clear_input: bool = False) -> Datapath:
        """Build a live Datapath from a Snapshot."""
        dp = cls(list(snap.memory))
        dp.cursor = snap.cursor
        dp.registers = list(snap.registers)
        dp.stack = list(snap.stack)
        dp.output_buffer = list(snap.output_buffer)
        dp.input_queue = [] if clear_input else list(snap.input_queue)
        return dp


# ---------- Console ----------
def parse_command(line: str) -> tuple[str, int] | None:
    """Recognize operator commands in an input line.

    Returns ("halt", 0), ("rewind", N) or None for ordinary program input.
    Raises ValueError for a malformed `rewind`.
    """
    text = line.strip()
    if text == "halt":
        return ("halt", 0)
    if text != "rewind" and not text.startswith("rewind "):
        return None
    parts = text.split()
    if len(parts) != 2:
        err = "usage: rewind <N>"
        raise ValueError(err)
    count = int(parts[1])
    if count < 0:
        err = "rewind count must be non-negative"
        raise ValueError(err)
    return ("rewind", count)


class Console:
    """Line-based console: output flushing and input line sourcing.

    Scripted lines are used first (recorded playback), then the interactive
    reader. Notices (diagnostics) go to a separate stream and never into the
    program transcript.
    """

    def __init__(
        self,
        script: list[str] | None = None,
        reader: Callable[[], str] | None = None,
        writer: TextIO | None = None,
        notices: TextIO | None = None,
        echo_script: bool = True,
    ) -> None:
        """Create a console; defaults are stdin/stdout/stderr."""
        self.script = list(script or [])
        self.reader = reader if reader is not None else sys.stdin.readline
        self.writer = writer if writer is not None else sys.stdout
        self.notices = notices if notices is not None else sys.stderr
        self.echo_script = echo_script
        self.transcript: list[str] = []

    def add_script(self, lines: list[str]) -> None:
        """Append scripted lines to the playback queue."""
        self.script.extend(lines)

    def flush(self, dp: Datapath) -> None:
        """Write out and clear the pending output of `dp`."""
        if not dp.output_buffer:
            return
        text = "".join(dp.output_buffer)
        dp.output_buffer.clear()
        self.transcript.append(text)
        self.writer.write(text)
        self.writer.flush()
        logging.debug("[OUT] flushed %d chars", len(text))

    def notice(self, msg: str) -> None:
        self.notices.write(msg + "\n")
        self.notices.flush()
        logging.info(msg)

    def read_line(self) -> str:
        """Return the next input line without its trailing newline."""
        if self.script:
            line = self.script.pop(0)
            logging.debug("[IN] scripted line %r (%d left)", line, len(self.script))
            if self.echo_script:
                self.notice(f"> {line}")
            return line
        raw = self.reader()
        if not raw:
            err = "End of interactive input"
            raise VoluntaryAbort(err)
        line = raw.rstrip("\r\n")
        logging.debug("[IN] interactive line %r", line)
        return line


# ---------- Checkpoints ----------
class CheckpointManager:
    """Append-only history of snapshots, truncated from the tail on rewind."""

    history: list[Snapshot]
    limit: int | None

    def __init__(self, limit: int | None = None) -> None:
        """Create an empty history; `limit` caps the number of snapshots kept."""
        self.history = []
        self.limit = limit

    def __len__(self) -> int:
        return len(self.history)

    def capture(self, dp: Datapath) -> Snapshot:
        """Append a snapshot of `dp` to the history."""
        snap = dp.snapshot()
        self.history.append(snap)
        if self.limit is not None and len(self.history) > self.limit:
            del self.history[0]
        logging.debug("checkpoint #%d captured at cursor %d", len(self.history), snap.cursor)
        return snap

    def rewind(self, count: int = 0) -> Datapath:
        """Discard `count` snapshots, then restore the next most recent one.

        In total count + 1 entries leave the history. The restored state has
        an empty input queue, so the next IN requests a fresh line.
        """
        if count < 0:
            err = "rewind count must be non-negative"
            raise ValueError(err)
        if len(self.history) < count + 1:
            err = f"Cannot rewind {count}: only {len(self.history)} snapshot(s) in history"
            raise HistoryExhausted(err)
        del self.history[len(self.history) - count :]
        snap = self.history.pop()
        logging.debug("rewind %d -> cursor %d, %d snapshot(s) left", count, snap.cursor, len(self.history))
        return Datapath.from_snapshot(snap, clear_input=True)


# ---------- Control unit ----------
class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC loop for the Datapath."""

    dp: Datapath
    console: Console
    checkpoints: CheckpointManager | None
    tick: int
    tick_limit: int | None
    trace: bool

    def __init__(
        self,
        dp: Datapath,
        console: Console | None = None,
        checkpoints: CheckpointManager | None = None,
        tick_limit: int | None = None,
        trace: bool = False,
    ) -> None:
        """Create a ControlUnit bound to `dp`.

        Without a CheckpointManager a terminal outcome stops the run instead
        of rewinding.
        """
        self.dp = dp
        self.console = console if console is not None else Console()
        self.checkpoints = checkpoints
        self.tick = 0
        self.tick_limit = tick_limit
        self.trace = trace

    def _log_step(self, opcode: OpCode, operands: list[int]) -> None:
        dp = self.dp
        regs = " ".join(f"{v:5d}" for v in dp.registers)
        logging.debug(
            "TICK: %6d CURSOR: %5d REGS: %s STACK: %3d\tINSTR: %s",
            self.tick,
            dp.cursor,
            regs,
            len(dp.stack),
            mnemonic(opcode, operands),
        )

    def step(self) -> None:
        """Decode and execute the instruction at the cursor."""
        dp = self.dp
        word = dp.fetch(0)
        try:
            opcode = decode_op(word)
        except ValueError as e:
            err = f"Unknown opcode {word} at {dp.cursor}"
            raise DecodeError(err) from e
        operands = [dp.fetch(i + 1) for i in range(ARITY[opcode])]
        if self.trace:
            self._log_step(opcode, operands)
        self.exec(opcode, operands)

    def exec(self, opcode: OpCode, ops: list[int]) -> None:  # noqa: C901
        """Execute a single decoded instruction and advance the cursor."""
        dp = self.dp
        size = len(ops) + 1
        r = dp.resolve

        if opcode == OpCode.HALT:
            raise TerminalOutcome("HALT", dp.cursor)
        if opcode == OpCode.SET:
            dp.reg_write(ops[0], r(ops[1]))
        elif opcode == OpCode.PUSH:
            dp.stack.append(r(ops[0]))
        elif opcode == OpCode.POP:
            if not dp.stack:
                err = f"POP on empty stack at {dp.cursor}"
                raise StackUnderflow(err)
            dp.reg_write(ops[0], dp.stack.pop())
        elif opcode == OpCode.EQ:
            dp.reg_write(ops[0], 1 if r(ops[1]) == r(ops[2]) else 0)
        elif opcode == OpCode.GT:
            dp.reg_write(ops[0], 1 if r(ops[1]) > r(ops[2]) else 0)
        elif opcode == OpCode.JMP:
            dp.cursor = r(ops[0])
            return
        elif opcode == OpCode.JT:
            if r(ops[0]) != 0:
                dp.cursor = r(ops[1])
                return
        elif opcode == OpCode.JF:
            if r(ops[0]) == 0:
                dp.cursor = r(ops[1])
                return
        elif opcode == OpCode.ADD:
            dp.reg_write(ops[0], (r(ops[1]) + r(ops[2])) % WORD_MOD)
        elif opcode == OpCode.MULT:
            dp.reg_write(ops[0], (r(ops[1]) * r(ops[2])) % WORD_MOD)
        elif opcode == OpCode.MOD:
            divisor = r(ops[2])
            if divisor == 0:
                err = f"MOD by zero at {dp.cursor}"
                raise VMArithmeticError(err)
            dp.reg_write(ops[0], (r(ops[1]) % divisor) % WORD_MOD)
        elif opcode == OpCode.AND:
            dp.reg_write(ops[0], (r(ops[1]) & r(ops[2])) & WORD_MASK)
        elif opcode == OpCode.OR:
            dp.reg_write(ops[0], (r(ops[1]) | r(ops[2])) & WORD_MASK)
        elif opcode == OpCode.NOT:
            dp.reg_write(ops[0], r(ops[1]) ^ WORD_MASK)
        elif opcode == OpCode.RMEM:
            dp.reg_write(ops[0], dp.read_word(r(ops[1])))
        elif opcode == OpCode.WMEM:
            dp.write_word(r(ops[0]), r(ops[1]))
        elif opcode == OpCode.CALL:
            dp.stack.append(dp.cursor + size)
            dp.cursor = r(ops[0])
            return
        elif opcode == OpCode.RET:
            if not dp.stack:
                raise TerminalOutcome("RET", dp.cursor)
            dp.cursor = dp.stack.pop()
            return
        elif opcode == OpCode.OUT:
            dp.output_buffer.append(chr(r(ops[0])))
        elif opcode == OpCode.IN:
            if not dp.input_queue:
                # the live state may be replaced by a rewind while waiting
                dp = self._await_input()
            dp.reg_write(dp.fetch(1), dp.input_queue.pop(0))
        # NOOP falls through
        dp.cursor += size

    def _await_input(self) -> Datapath:
        """Flush output, checkpoint and source a new input line.

        Operator commands are handled here: `halt` aborts the run and
        `rewind N` replaces the live state with a restored snapshot, which
        is itself waiting for input and gets checkpointed again.
        """
        self.console.flush(self.dp)
        if self.checkpoints is not None:
            self.checkpoints.capture(self.dp)
        while True:
            line = self.console.read_line()
            try:
                command = parse_command(line)
            except ValueError as e:
                self.console.notice(f"Bad operator command {line!r}: {e}")
                continue
            if command is None:
                try:
                    self.dp.queue_line(line)
                except ValueError as e:
                    self.console.notice(f"Bad input line {line!r}: {e}")
                    continue
                return self.dp
            name, count = command
            if name == "halt":
                err = "Manually halted"
                raise VoluntaryAbort(err)
            if self.checkpoints is None:
                self.console.notice("rewind is unavailable: checkpoints are disabled")
                continue
            self.dp = self.checkpoints.rewind(count)
            self.checkpoints.capture(self.dp)
            self.console.notice(f"Rewound to snapshot at cursor {self.dp.cursor}")

    def _rewind_terminal(self, checkpoints: CheckpointManager, outcome: TerminalOutcome) -> None:
        """Replace the live state with the most recent snapshot."""
        self.console.notice(f"Program was going to terminate ({outcome}). Rewinding..")
        self.dp = checkpoints.rewind(0)

    def run(self) -> tuple[str, int, str]:
        """Execute until the cursor leaves memory, the tick limit or a stop.

        Returns (transcript, ticks, state) where state is "stopped",
        "halted" or "limit". Fatal VM errors propagate after the pending
        output is flushed.
        """
        state = "stopped"
        try:
            while 0 <= self.dp.cursor < MEM_CELLS:
                if self.tick_limit is not None and self.tick >= self.tick_limit:
                    logging.debug("tick limit %d reached", self.tick_limit)
                    state = "limit"
                    break
                try:
                    self.step()
                except TerminalOutcome as outcome:
                    self.tick += 1
                    self.console.flush(self.dp)
                    if self.checkpoints is None:
                        logging.debug("%s -> stop", outcome)
                        state = "halted"
                        break
                    self._rewind_terminal(self.checkpoints, outcome)
                    continue
                self.tick += 1
        finally:
            self.console.flush(self.dp)
        return "".join(self.console.transcript), self.tick, state


# ---------- Public API ----------
def build_control_unit(
    image: list[int],
    config: str | dict[str, Any] | None = None,
    reader: Callable[[], str] | None = None,
    writer: TextIO | None = None,
    notices: TextIO | None = None,
) -> ControlUnit:
    """Wire Datapath, Console and (optionally) CheckpointManager from config."""
    cfg = load_config(config)
    console = Console(
        script=load_script(cfg["script"]),
        reader=reader,
        writer=writer,
        notices=notices,
        echo_script=cfg["echo_script"],
    )
    checkpoints = CheckpointManager(cfg["history_limit"]) if cfg["rewind"] else None
    return ControlUnit(
        Datapath(image),
        console,
        checkpoints,
        tick_limit=cfg["tick_limit"],
        trace=cfg["trace"],
    )


def run_image(
    image: bytes | list[int],
    config: str | dict[str, Any] | None = None,
    reader: Callable[[], str] | None = None,
    writer: TextIO | None = None,
    notices: TextIO | None = None,
) -> tuple[str, int, str]:
    """Run VM on a program image and config and return (stdout, ticks, state)."""
    words = load_image(image) if isinstance(image, (bytes, bytearray)) else list(image)
    cu = build_control_unit(words, config, reader=reader, writer=writer, notices=notices)
    return cu.run()


# ---------- CLI ----------
if __name__ == "__main__":
    import argparse

    ap = argparse.ArgumentParser(
        description="Processor VM runner. Runs a program image (little-endian 16-bit words); "
        "input lines come from --script first, then from stdin. "
        "Operator commands: 'rewind <N>', 'halt'."
    )
    ap.add_argument("program", help="program image (.bin)")
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--script", help="scripted command file (one input line per line)", default=None)
    ap.add_argument("--no-rewind", action="store_true", help="stop on HALT instead of rewinding")

    help_debug = "enable debug logging to logfile."
    help_logfile = "path to processor log"
    help_console = "also echo logs to stderr (only when --debug)"
    ap.add_argument("--debug", action="store_true", help=help_debug)
    ap.add_argument("--logfile", default=LOGFILE, help=help_logfile)
    ap.add_argument("--console", action="store_true", help=help_console)
    args = ap.parse_args()

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
        if args.script:
            cfg["script"] = args.script
        if args.no_rewind:
            cfg["rewind"] = False
        cfg = load_config(cfg)
        cfg["script"] = load_script(cfg["script"])
    except ConfigError as e:
        print("Bad config:", e)
        sys.exit(2)

    code_path = Path(args.program)
    if not code_path.exists():
        print("Program file not found:", args.program)
        sys.exit(2)

    try:
        words = load_image(code_path.read_bytes())
    except (ValueError, MemoryError) as e:
        print("Bad program:", e)
        sys.exit(2)

    started = time.perf_counter()
    status = 0
    try:
        _, ticks, state = run_image(words, cfg)
        logging.info("run finished: %s after %d ticks", state, ticks)
    except VoluntaryAbort as e:
        logging.info("aborted: %s", e)
        print(f"\n{e}", file=sys.stderr)
    except (VMError, MemoryError) as e:
        logging.exception("VM fault")
        print(f"\n{type(e).__name__}: {e}", file=sys.stderr)
        status = 1
    elapsed_ms = (time.perf_counter() - started) * 1000
    print(f" (took {elapsed_ms:.0f} ms)", file=sys.stderr)
    sys.exit(status)
