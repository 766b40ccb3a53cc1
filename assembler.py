"""Module: assemble small text programs into VM program images.

This module contains:
- tokenize(line) -> list of tokens of one source line
- Assembler class that turns source text into a list of words
- assemble_file() / CLI writing little-endian program images

Syntax, one statement per line:

    loop:   out 'A'          ; label, mnemonic, char literal
            add r0 r0 1      ; registers r0..r7, decimal or 0x literals
            jt r0 loop       ; labels resolve to addresses
    msg:    .str "hi\\n"     ; raw words: one per character
            .word 1 2 0x7fff
"""

from __future__ import annotations

import argparse
import re
from pathlib import Path

from isa import ARITY, MAX_VALUE, REG_BASE, REG_COUNT, OpCode, encode_image

TOKEN_RE = re.compile(
    r"""
    \s*                             # skip leading whitespace
    ('(?:[^'\\]|\\.)+'|             # char literal (with escapes)
     "(?:[^"\\]|\\.)*"|             # double-quoted string (with escapes)
     ;.*|                           # comment until end-of-line
     [^\s,;]+)                      # label, mnemonic, number, symbol
    ,?                              # optional operand separator
    """,
    re.VERBOSE,
)
_INT_RE = re.compile(r"^(0[xX][0-9a-fA-F]+|\d+)$")
_REG_RE = re.compile(r"^[rR]([0-9]+)$")
_LABEL_RE = re.compile(r"^[A-Za-z_.][A-Za-z0-9_.]*$")

MNEMONICS = {op.name.lower(): op for op in OpCode}


class AsmError(SyntaxError):
    """Raised for malformed source; carries the 1-based line number."""

    def __init__(self, msg: str, lineno: int) -> None:
        """Prefix the message with the offending line number."""
        super().__init__(f"line {lineno}: {msg}")
        self.lineno = lineno


def tokenize(line: str) -> list[str]:
    """Split one source line into tokens (comments dropped)."""
    tokens: list[str] = []
    for m in TOKEN_RE.finditer(line):
        tok = m.group(1)
        if tok is None or tok.startswith(";"):
            continue
        tokens.append(tok)
    return tokens


def _unescape(text: str) -> str:
    return text.encode("utf-8").decode("unicode_escape")


class Assembler:
    """Two-pass assembler: the first pass places labels, the second emits words."""

    def __init__(self, source: str) -> None:
        """Create an Assembler for `source` text."""
        self.source = source
        self.labels: dict[str, int] = {}
        self.words: list[int] = []

    def _statements(self) -> list[tuple[int, list[str]]]:
        """Return (lineno, tokens) per non-empty line, with labels recorded."""
        result: list[tuple[int, list[str]]] = []
        addr = 0
        for lineno, line in enumerate(self.source.splitlines(), start=1):
            toks = tokenize(line)
            while toks and toks[0].endswith(":"):
                name = toks.pop(0)[:-1]
                if not _LABEL_RE.fullmatch(name):
                    raise AsmError(f"bad label {name!r}", lineno)
                if name in self.labels:
                    raise AsmError(f"duplicate label {name!r}", lineno)
                self.labels[name] = addr
            if not toks:
                continue
            addr += self._size(toks, lineno)
            result.append((lineno, toks))
        return result

    def _size(self, toks: list[str], lineno: int) -> int:
        head = toks[0].lower()
        if head == ".word":
            return len(toks) - 1
        if head == ".str":
            if len(toks) != 2 or not toks[1].startswith('"'):
                raise AsmError(".str expects one quoted string", lineno)
            return len(_unescape(toks[1][1:-1]))
        op = MNEMONICS.get(head)
        if op is None:
            raise AsmError(f"unknown mnemonic {toks[0]!r}", lineno)
        if len(toks) - 1 != ARITY[op]:
            raise AsmError(f"{head} takes {ARITY[op]} operand(s), got {len(toks) - 1}", lineno)
        return 1 + ARITY[op]

    def operand(self, tok: str, lineno: int, limit: int = MAX_VALUE) -> int:
        """Translate an operand token into a word."""
        m = _REG_RE.fullmatch(tok)
        if m:
            idx = int(m.group(1))
            if idx >= REG_COUNT:
                raise AsmError(f"no register {tok!r}", lineno)
            return REG_BASE + idx
        if tok.startswith("'"):
            text = _unescape(tok[1:-1])
            if len(text) != 1:
                raise AsmError(f"bad char literal {tok}", lineno)
            return ord(text)
        if _INT_RE.fullmatch(tok):
            value = int(tok, 0)
            if value > limit:
                raise AsmError(f"literal {value} out of range (0..{limit})", lineno)
            return value
        if tok in self.labels:
            return self.labels[tok]
        raise AsmError(f"unknown label {tok!r}", lineno)

    def assemble(self) -> list[int]:
        """Assemble the whole source and return the program words."""
        self.labels = {}
        self.words = []
        for lineno, toks in self._statements():
            head = toks[0].lower()
            if head == ".word":
                self.words.extend(self.operand(t, lineno, limit=0xFFFF) for t in toks[1:])
            elif head == ".str":
                self.words.extend(ord(ch) for ch in _unescape(toks[1][1:-1]))
            else:
                self.words.append(int(MNEMONICS[head]))
                self.words.extend(self.operand(t, lineno) for t in toks[1:])
        return self.words


def assemble(source: str) -> list[int]:
    """Assemble source text into program words."""
    return Assembler(source).assemble()


def assemble_file(input_path: str | Path, out_bin: str | Path | None = None) -> str:
    """Assemble a source file and write the program image.

    If out_bin is not provided it is derived from input_path ("<stem>.bin").
    Returns the written path.
    """
    p = Path(input_path)
    if not p.exists():
        err = f"Source file not found: {input_path}"
        raise FileNotFoundError(err)

    words = assemble(p.read_text(encoding="utf-8"))
    out_bin_path = p.with_suffix(".bin") if out_bin is None else Path(out_bin)
    out_bin_path.write_bytes(encode_image(words))
    return str(out_bin_path)


# --- CLI ---
if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Assemble source text into a VM program image")
    ap.add_argument("input", help="source file (e.g. program.asm)")
    ap.add_argument("-o", "--out", help="output binary file (default: <input>.bin)")
    args = ap.parse_args()

    print(assemble_file(args.input, out_bin=args.out))
