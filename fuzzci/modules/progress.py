"""
Decoder for the diagnostic stream of honggfuzz running non-interactively (`-v`).

Two kinds of lines carry numbers we care about:

    Sz:1024 Tm:1,213us (i/b/h/e/p/c) New:0/0/0/12/0/0, Cur:0/0/0/120/0/0
    Summary iterations:10000 time:10 speed:1000 crashes_count:0 ... guard_nb:500 ...

The `Cur:` block is cumulative and ordered by the `(i/b/h/e/p/c)` legend; `e` is the
number of covered edges. `guard_nb` is the number of instrumented edges, i.e. the
total. Everything else on a line is ignored, so new fields do not break the parser.

Crashes found while the run goes on are only announced one at a time:

    Crash: saved as '/corpus/SIGSEGV.PC.0.STACK.0.CODE.1.ADDR.0.INSTR.mov.fuzz'
    Crash (dup): '/corpus/SIGSEGV.PC.0...fuzz' already exists, skipping

`crashes_count` on the exit summary counts the same crashes, duplicates included.
"""

from enum import Enum, auto
from typing import Iterable, Optional

import regex

from fuzzci.common.types import ProgressSample

class NotAProgressLine(Enum):
    NOT_A_PROGRESS_LINE = auto()

NOT_A_PROGRESS_LINE = NotAProgressLine.NOT_A_PROGRESS_LINE

type ParseResult = ProgressSample | NotAProgressLine

# number of '/'-separated fields in the New: and Cur: blocks
BLOCK_FIELDS = 6
COVERED_EDGES_FIELD = 3

_BLOCK = regex.compile(r'(?<![\w])(New|Cur):([^\s,]*)')
_LABELED = regex.compile(r'(?<![\w])(iterations|crashes_count|guard_nb):([^\s,]*)')
_UNSIGNED = regex.compile(r'[0-9]+')
_CRASH = regex.compile(r'(?<![\w])Crash(?: \(dup\))?:')

def _unsigned(field: str) -> Optional[int]:
    if not _UNSIGNED.fullmatch(field):
        return None
    return int(field)

def _block(value: str) -> Optional[list[int]]:
    fields = value.split("/")
    if len(fields) < BLOCK_FIELDS:
        return None
    res: list[int] = []
    # extra fields past the known ones are not validated
    for f in fields[:BLOCK_FIELDS]:
        if (n := _unsigned(f)) is None:
            return None
        res.append(n)
    return res

def parse_progress(line: str) -> ParseResult:
    """
    Decodes one line of engine output. Lines without any recognised group, or with a
    recognised group that does not hold unsigned integers, are NOT_A_PROGRESS_LINE.
    """
    found = False
    covered: Optional[int] = None
    values: dict[str, int] = {}

    for m in _BLOCK.finditer(line):
        found = True
        if (block := _block(m.group(2))) is None:
            return NOT_A_PROGRESS_LINE
        if m.group(1) == "Cur":
            covered = block[COVERED_EDGES_FIELD]

    for m in _LABELED.finditer(line):
        found = True
        if (n := _unsigned(m.group(2))) is None:
            return NOT_A_PROGRESS_LINE
        values[m.group(1)] = n

    if not found:
        return NOT_A_PROGRESS_LINE

    return ProgressSample(
        covered_edges=covered,
        total_edges=values.get("guard_nb"),
        crashes=values.get("crashes_count"),
        iterations=values.get("iterations"),
    )

def total_edges(lines: Iterable[str]) -> Optional[int]:
    """Largest `guard_nb` reported in `lines`, if any."""
    total: Optional[int] = None
    for line in lines:
        match parse_progress(line):
            case ProgressSample(total_edges=int(n)):
                total = n if total is None else max(total, n)
            case _:
                pass
    return total

def is_crash(line: str) -> bool:
    """True for the line the engine logs each time an input crashes the target."""
    return _CRASH.search(line) is not None
