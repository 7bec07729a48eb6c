"""Flat text form of instruction streams.

One instruction per line, immediates after the mnemonic, ``;;`` comments::

    local.get 0
    i32.const 1
    i32.add
    i32.load offset=4 align=4
    br_table 0 1 2      ;; last label is the default
"""
from __future__ import annotations

import re
import struct

from ..constants import VALUE_TYPES
from .module import Instr
from .opcodes import MEMORY_ACCESS, immediate_kind

_VALUE_TYPE_NAMES = set(VALUE_TYPES.values())
_KEYWORD = re.compile(r"^(offset|align|type)=(\S+)$")


def _int(token):
    return int(token.replace("_", ""), 0)


def _wrap(value, bits):
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _float_bits(token, fmt):
    if token.startswith("bits:"):
        return _int(token[5:])
    packed = struct.pack("<" + fmt, float(token))
    return int.from_bytes(packed, "little")


def parse_instr(line):
    tokens = line.split()
    op, args = tokens[0], tokens[1:]
    try:
        kind = immediate_kind(op, args if op == "select" else None)
    except KeyError:
        raise ValueError(f"unknown instruction {op!r}") from None

    if kind is None or kind == "memory":
        if args:
            raise ValueError(f"{op} takes no immediates")
        return Instr(op, 0 if kind == "memory" else None)
    if kind == "block":
        if not args:
            return Instr(op, None)
        if args[0] in _VALUE_TYPE_NAMES:
            return Instr(op, args[0])
        match = _KEYWORD.match(args[0])
        if match and match.group(1) == "type":
            return Instr(op, _int(match.group(2)))
        raise ValueError(f"invalid block type {args[0]!r}")
    if kind in ("label", "func", "local", "global"):
        return Instr(op, _int(args[0]))
    if kind == "br_table":
        labels = [_int(a) for a in args]
        return Instr(op, (tuple(labels[:-1]), labels[-1]))
    if kind == "call_indirect":
        type_index = _int(args[0])
        table = _int(args[1]) if len(args) > 1 else 0
        return Instr(op, (type_index, table))
    if kind == "memarg":
        width = MEMORY_ACCESS[op][1]
        offset, align = 0, width
        for arg in args:
            match = _KEYWORD.match(arg)
            if not match:
                raise ValueError(f"invalid memory argument {arg!r}")
            if match.group(1) == "offset":
                offset = _int(match.group(2))
            else:
                align = _int(match.group(2))
        return Instr(op, (align.bit_length() - 1, offset))
    if kind == "i32":
        return Instr(op, _wrap(_int(args[0]), 32))
    if kind == "i64":
        return Instr(op, _wrap(_int(args[0]), 64))
    if kind == "f32":
        return Instr(op, _float_bits(args[0], "f"))
    if kind == "f64":
        return Instr(op, _float_bits(args[0], "d"))
    if kind == "select_t":
        return Instr(op, tuple(args))
    raise ValueError(f"cannot parse {line!r}")  # pragma: no cover


def parse_instructions(text):
    """Parse the flat text form into a list of :class:`Instr`."""
    instrs = []
    for raw in text.splitlines():
        line = raw.split(";;", 1)[0].strip()
        if line:
            instrs.append(parse_instr(line))
    return instrs


def format_instr(instr):
    op, imm = instr.op, instr.imm
    kind = immediate_kind(op, imm if op == "select" else None)
    if kind is None or kind == "memory":
        return op
    if kind == "block":
        if imm is None:
            return op
        if isinstance(imm, str):
            return f"{op} {imm}"
        return f"{op} type={imm}"
    if kind == "br_table":
        labels, default = imm
        return " ".join([op, *map(str, labels), str(default)])
    if kind == "call_indirect":
        return f"{op} {imm[0]}" if imm[1] == 0 else f"{op} {imm[0]} {imm[1]}"
    if kind == "memarg":
        align, offset = imm
        parts = [op]
        if offset:
            parts.append(f"offset={offset}")
        if (1 << align) != MEMORY_ACCESS[op][1]:
            parts.append(f"align={1 << align}")
        return " ".join(parts)
    if kind in ("f32", "f64"):
        return f"{op} bits:0x{imm:x}"
    if kind == "select_t":
        return " ".join([op, *imm])
    return f"{op} {imm}"


def format_instructions(instrs, indent="  "):
    """Render instructions back to the flat text form, indented by nesting."""
    lines = []
    depth = 0
    for instr in instrs:
        if instr.op in ("end", "else"):
            depth = max(depth - 1, 0)
        lines.append(indent * depth + format_instr(instr))
        if instr.op in ("block", "loop", "if", "else"):
            depth += 1
    return "\n".join(lines)


__all__ = [
    "format_instr",
    "format_instructions",
    "parse_instr",
    "parse_instructions",
]
