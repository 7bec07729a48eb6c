"""Opcode table for the WebAssembly MVP and the sign-extension operators."""
from __future__ import annotations

_CONTROL = {
    0x00: ("unreachable", None),
    0x01: ("nop", None),
    0x02: ("block", "block"),
    0x03: ("loop", "block"),
    0x04: ("if", "block"),
    0x05: ("else", None),
    0x0B: ("end", None),
    0x0C: ("br", "label"),
    0x0D: ("br_if", "label"),
    0x0E: ("br_table", "br_table"),
    0x0F: ("return", None),
    0x10: ("call", "func"),
    0x11: ("call_indirect", "call_indirect"),
    0x1A: ("drop", None),
    0x1B: ("select", None),
    0x1C: ("select", "select_t"),
    0x20: ("local.get", "local"),
    0x21: ("local.set", "local"),
    0x22: ("local.tee", "local"),
    0x23: ("global.get", "global"),
    0x24: ("global.set", "global"),
    0x3F: ("memory.size", "memory"),
    0x40: ("memory.grow", "memory"),
    0x41: ("i32.const", "i32"),
    0x42: ("i64.const", "i64"),
    0x43: ("f32.const", "f32"),
    0x44: ("f64.const", "f64"),
}

_MEMORY = [
    (0x28, "i32.load", "i32", 4, None),
    (0x29, "i64.load", "i64", 8, None),
    (0x2A, "f32.load", "f32", 4, None),
    (0x2B, "f64.load", "f64", 8, None),
    (0x2C, "i32.load8_s", "i32", 1, True),
    (0x2D, "i32.load8_u", "i32", 1, False),
    (0x2E, "i32.load16_s", "i32", 2, True),
    (0x2F, "i32.load16_u", "i32", 2, False),
    (0x30, "i64.load8_s", "i64", 1, True),
    (0x31, "i64.load8_u", "i64", 1, False),
    (0x32, "i64.load16_s", "i64", 2, True),
    (0x33, "i64.load16_u", "i64", 2, False),
    (0x34, "i64.load32_s", "i64", 4, True),
    (0x35, "i64.load32_u", "i64", 4, False),
    (0x36, "i32.store", "i32", 4, None),
    (0x37, "i64.store", "i64", 8, None),
    (0x38, "f32.store", "f32", 4, None),
    (0x39, "f64.store", "f64", 8, None),
    (0x3A, "i32.store8", "i32", 1, None),
    (0x3B, "i32.store16", "i32", 2, None),
    (0x3C, "i64.store8", "i64", 1, None),
    (0x3D, "i64.store16", "i64", 2, None),
    (0x3E, "i64.store32", "i64", 4, None),
]

_INT_TEST = ["eqz"]
_INT_REL = ["eq", "ne", "lt_s", "lt_u", "gt_s", "gt_u", "le_s", "le_u", "ge_s", "ge_u"]
_FLOAT_REL = ["eq", "ne", "lt", "gt", "le", "ge"]
_INT_UN = ["clz", "ctz", "popcnt"]
_INT_BIN = [
    "add", "sub", "mul", "div_s", "div_u", "rem_s", "rem_u",
    "and", "or", "xor", "shl", "shr_s", "shr_u", "rotl", "rotr",
]
_FLOAT_UN = ["abs", "neg", "ceil", "floor", "trunc", "nearest", "sqrt"]
_FLOAT_BIN = ["add", "sub", "mul", "div", "min", "max", "copysign"]

_CONVERSIONS = [
    (0xA7, "i32.wrap_i64", "i64", "i32"),
    (0xA8, "i32.trunc_f32_s", "f32", "i32"),
    (0xA9, "i32.trunc_f32_u", "f32", "i32"),
    (0xAA, "i32.trunc_f64_s", "f64", "i32"),
    (0xAB, "i32.trunc_f64_u", "f64", "i32"),
    (0xAC, "i64.extend_i32_s", "i32", "i64"),
    (0xAD, "i64.extend_i32_u", "i32", "i64"),
    (0xAE, "i64.trunc_f32_s", "f32", "i64"),
    (0xAF, "i64.trunc_f32_u", "f32", "i64"),
    (0xB0, "i64.trunc_f64_s", "f64", "i64"),
    (0xB1, "i64.trunc_f64_u", "f64", "i64"),
    (0xB2, "f32.convert_i32_s", "i32", "f32"),
    (0xB3, "f32.convert_i32_u", "i32", "f32"),
    (0xB4, "f32.convert_i64_s", "i64", "f32"),
    (0xB5, "f32.convert_i64_u", "i64", "f32"),
    (0xB6, "f32.demote_f64", "f64", "f32"),
    (0xB7, "f64.convert_i32_s", "i32", "f64"),
    (0xB8, "f64.convert_i32_u", "i32", "f64"),
    (0xB9, "f64.convert_i64_s", "i64", "f64"),
    (0xBA, "f64.convert_i64_u", "i64", "f64"),
    (0xBB, "f64.promote_f32", "f32", "f64"),
    (0xBC, "i32.reinterpret_f32", "f32", "i32"),
    (0xBD, "i64.reinterpret_f64", "f64", "i64"),
    (0xBE, "f32.reinterpret_i32", "i32", "f32"),
    (0xBF, "f64.reinterpret_i64", "i64", "f64"),
    (0xC0, "i32.extend8_s", "i32", "i32"),
    (0xC1, "i32.extend16_s", "i32", "i32"),
    (0xC2, "i64.extend8_s", "i64", "i64"),
    (0xC3, "i64.extend16_s", "i64", "i64"),
    (0xC4, "i64.extend32_s", "i64", "i64"),
]


def _build_tables():
    opcodes = dict(_CONTROL)
    signatures = {}
    memory = {}

    for code, name, ty, width, signed in _MEMORY:
        opcodes[code] = (name, "memarg")
        memory[name] = (ty, width, signed)
        if ".load" in name:
            signatures[name] = (("i32",), (ty,))
        else:
            signatures[name] = (("i32", ty), ())

    def numeric(start, ty, names, params, result):
        code = start
        for name in names:
            full = f"{ty}.{name}"
            opcodes[code] = (full, None)
            signatures[full] = (params, result)
            code += 1
        return code

    numeric(0x45, "i32", _INT_TEST, ("i32",), ("i32",))
    numeric(0x46, "i32", _INT_REL, ("i32", "i32"), ("i32",))
    numeric(0x50, "i64", _INT_TEST, ("i64",), ("i32",))
    numeric(0x51, "i64", _INT_REL, ("i64", "i64"), ("i32",))
    numeric(0x5B, "f32", _FLOAT_REL, ("f32", "f32"), ("i32",))
    numeric(0x61, "f64", _FLOAT_REL, ("f64", "f64"), ("i32",))
    numeric(0x67, "i32", _INT_UN, ("i32",), ("i32",))
    numeric(0x6A, "i32", _INT_BIN, ("i32", "i32"), ("i32",))
    numeric(0x79, "i64", _INT_UN, ("i64",), ("i64",))
    numeric(0x7C, "i64", _INT_BIN, ("i64", "i64"), ("i64",))
    numeric(0x8B, "f32", _FLOAT_UN, ("f32",), ("f32",))
    numeric(0x92, "f32", _FLOAT_BIN, ("f32", "f32"), ("f32",))
    numeric(0x99, "f64", _FLOAT_UN, ("f64",), ("f64",))
    numeric(0xA0, "f64", _FLOAT_BIN, ("f64", "f64"), ("f64",))

    for code, name, src, dst in _CONVERSIONS:
        opcodes[code] = (name, None)
        signatures[name] = ((src,), (dst,))

    return opcodes, signatures, memory


OPCODES, SIGNATURES, MEMORY_ACCESS = _build_tables()

# ``select`` appears twice (plain and typed); the plain form is the default.
OPCODE_BY_NAME = {}
for _code, (_name, _kind) in sorted(OPCODES.items()):
    OPCODE_BY_NAME.setdefault(_name, (_code, _kind))


def immediate_kind(op, imm=None):
    """Immediate kind used to encode ``op``."""
    if op == "select" and imm:
        return "select_t"
    return OPCODE_BY_NAME[op][1]


def opcode_byte(op, imm=None):
    if op == "select" and imm:
        return 0x1C
    return OPCODE_BY_NAME[op][0]


__all__ = [
    "MEMORY_ACCESS",
    "OPCODES",
    "OPCODE_BY_NAME",
    "SIGNATURES",
    "immediate_kind",
    "opcode_byte",
]
