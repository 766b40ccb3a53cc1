"""Tests for the text assembler and the image -> run pipeline."""

import io
from pathlib import Path

import pytest
from assembler import AsmError, assemble, assemble_file, tokenize
from isa import load_image
from processor import run_image


def test_tokenize_handles_literals_and_comments() -> None:
    assert tokenize("out ';' ; comment") == ["out", "';'"]
    assert tokenize("add r0, r1, 1") == ["add", "r0", "r1", "1"]
    assert tokenize('msg: .str "a b"') == ["msg:", ".str", '"a b"']


def test_assemble_instructions_and_labels() -> None:
    words = assemble(
        """
        start:  out 'A'
                jmp end
                .word 1 0x10
        end:    halt
        """
    )
    assert words == [19, 65, 6, 6, 1, 16, 0]


def test_registers_chars_and_strings() -> None:
    assert assemble("set r7 '\\n'") == [1, 32775, 10]
    assert assemble('.str "hi\\n"') == [104, 105, 10]


@pytest.mark.parametrize(
    "src",
    ["bogus 1", "out", "out 1 2", "set r8 1", "jmp nowhere", "out 40000", "a:\na: halt", "9x: halt"],
)
def test_errors_carry_line_numbers(src: str) -> None:
    with pytest.raises(AsmError) as e:
        assemble(src)
    assert e.value.lineno >= 1


def test_assemble_file_and_run(tmp_path: Path) -> None:
    src = tmp_path / "hello.asm"
    src.write_text("out 'o'\nout 'k'\nhalt\n", encoding="utf-8")
    out_path = assemble_file(src)
    assert out_path.endswith("hello.bin")
    blob = Path(out_path).read_bytes()
    assert load_image(blob)[:5] == [19, 111, 19, 107, 0]

    out = io.StringIO()
    result = run_image(blob, {"rewind": False}, writer=out, notices=io.StringIO())
    assert result == ("ok", 3, "halted")
    assert out.getvalue() == "ok"
