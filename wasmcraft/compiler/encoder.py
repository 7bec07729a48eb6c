"""Binary encoder and a small builder for WebAssembly modules."""
from __future__ import annotations

from ..constants import (
    EMPTY_BLOCK_TYPE,
    EXTERNAL_KIND_CODES,
    FUNCREF,
    FUNC_TYPE_FORM,
    VALUE_TYPE_CODES,
    WASM_MAGIC,
    WASM_VERSION,
)
from .module import (
    DataSegment,
    ElemSegment,
    Export,
    FuncType,
    Function,
    Global,
    GlobalType,
    Import,
    Instr,
    Limits,
    Module,
    TableType,
)
from .opcodes import immediate_kind, opcode_byte
from .text import parse_instructions


def u32(value):
    out = bytearray()
    while True:
        b = value & 0x7F
        value >>= 7
        if value:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def sleb(value):
    out = bytearray()
    while True:
        b = value & 0x7F
        value >>= 7
        done = (value == 0 and not b & 0x40) or (value == -1 and b & 0x40)
        out.append(b if done else b | 0x80)
        if done:
            return bytes(out)


def _name(text):
    raw = text.encode("utf-8")
    return u32(len(raw)) + raw


def _vector(items, encode):
    return u32(len(items)) + b"".join(encode(item) for item in items)


def _value_type(value_type):
    return bytes([VALUE_TYPE_CODES[value_type]])


def _functype(ft):
    return (
        bytes([FUNC_TYPE_FORM])
        + _vector(ft.params, _value_type)
        + _vector(ft.results, _value_type)
    )


def _limits(limits):
    if limits.max is None:
        return b"\x00" + u32(limits.min)
    return b"\x01" + u32(limits.min) + u32(limits.max)


def _tabletype(table):
    return bytes([FUNCREF]) + _limits(table.limits)


def _globaltype(gt):
    return _value_type(gt.type) + bytes([1 if gt.mutable else 0])


def _immediate(instr):
    kind = immediate_kind(instr.op, instr.imm if instr.op == "select" else None)
    imm = instr.imm
    if kind is None:
        return b""
    if kind == "block":
        if imm is None:
            return bytes([EMPTY_BLOCK_TYPE])
        if isinstance(imm, str):
            return _value_type(imm)
        return sleb(imm)
    if kind in ("label", "func", "local", "global"):
        return u32(imm)
    if kind == "br_table":
        labels, default = imm
        return _vector(labels, u32) + u32(default)
    if kind == "call_indirect":
        return u32(imm[0]) + u32(imm[1])
    if kind == "memarg":
        return u32(imm[0]) + u32(imm[1])
    if kind == "memory":
        return b"\x00"
    if kind in ("i32", "i64"):
        return sleb(imm)
    if kind == "f32":
        return imm.to_bytes(4, "little")
    if kind == "f64":
        return imm.to_bytes(8, "little")
    if kind == "select_t":
        return _vector(imm, _value_type)
    raise ValueError(f"cannot encode immediate of {instr.op}")  # pragma: no cover


def encode_instructions(instrs):
    return b"".join(
        bytes([opcode_byte(i.op, i.imm)]) + _immediate(i) for i in instrs
    )


def _expr(instrs):
    return encode_instructions(instrs) + b"\x0b"


def _import(imp):
    head = _name(imp.module) + _name(imp.name) + bytes([EXTERNAL_KIND_CODES[imp.kind]])
    if imp.kind == "func":
        return head + u32(imp.desc)
    if imp.kind == "table":
        return head + _tabletype(imp.desc)
    if imp.kind == "memory":
        return head + _limits(imp.desc)
    return head + _globaltype(imp.desc)


def _export(exp):
    return _name(exp.name) + bytes([EXTERNAL_KIND_CODES[exp.kind]]) + u32(exp.index)


def _element(seg):
    funcs = _vector(seg.funcs, u32)
    if seg.mode == "passive":
        return u32(1) + b"\x00" + funcs
    if seg.mode == "declarative":
        return u32(3) + b"\x00" + funcs
    if seg.table == 0:
        return u32(0) + _expr(seg.offset) + funcs
    return u32(2) + u32(seg.table) + _expr(seg.offset) + b"\x00" + funcs


def _data(seg):
    payload = u32(len(seg.data)) + bytes(seg.data)
    if seg.mode == "passive":
        return u32(1) + payload
    if seg.memory == 0:
        return u32(0) + _expr(seg.offset) + payload
    return u32(2) + u32(seg.memory) + _expr(seg.offset) + payload


def _locals(local_types):
    groups = []
    for value_type in local_types:
        if groups and groups[-1][1] == value_type:
            groups[-1][0] += 1
        else:
            groups.append([1, value_type])
    return _vector(groups, lambda g: u32(g[0]) + _value_type(g[1]))


def _code(func):
    body = list(func.body)
    if not body or body[-1].op != "end":
        body.append(Instr("end"))
    payload = _locals(func.locals) + encode_instructions(body)
    return u32(len(payload)) + payload


def _section(section_id, payload):
    return bytes([section_id]) + u32(len(payload)) + payload


def encode_module(module):
    """Encode ``module`` back into the binary format."""
    out = bytearray(WASM_MAGIC + WASM_VERSION.to_bytes(4, "little"))
    if module.types:
        out += _section(1, _vector(module.types, _functype))
    if module.imports:
        out += _section(2, _vector(module.imports, _import))
    if module.functions:
        out += _section(3, _vector(module.functions, lambda f: u32(f.type_index)))
    if module.tables:
        out += _section(4, _vector(module.tables, _tabletype))
    if module.memories:
        out += _section(5, _vector(module.memories, _limits))
    if module.globals:
        out += _section(
            6, _vector(module.globals, lambda g: _globaltype(g.type) + _expr(g.init))
        )
    if module.exports:
        out += _section(7, _vector(module.exports, _export))
    if module.start is not None:
        out += _section(8, u32(module.start))
    if module.elements:
        out += _section(9, _vector(module.elements, _element))
    if module.data_count is not None:
        out += _section(12, u32(module.data_count))
    if module.functions:
        out += _section(10, _vector(module.functions, _code))
    if module.data:
        out += _section(11, _vector(module.data, _data))
    for name, payload in module.customs:
        out += _section(0, _name(name) + bytes(payload))
    return bytes(out)


def encode_name_section(names):
    """Payload of a ``name`` custom section holding function names."""
    entries = _vector(sorted(names.items()), lambda item: u32(item[0]) + _name(item[1]))
    return b"\x01" + u32(len(entries)) + entries


class ModuleBuilder:
    """Incrementally assemble a :class:`Module`.

    Function bodies may be given as instruction lists or in the flat text form
    understood by :func:`parse_instructions`.
    """

    def __init__(self):
        self.module = Module()

    def type_index(self, params=(), results=()):
        ft = FuncType(params, results)
        if ft in self.module.types:
            return self.module.types.index(ft)
        self.module.types.append(ft)
        return len(self.module.types) - 1

    def import_function(self, module, name, params=(), results=()):
        if self.module.functions:
            raise ValueError("imports must be declared before defined functions")
        self.module.imports.append(Import(module, name, "func", self.type_index(params, results)))
        return self.module.num_imported_funcs - 1

    def add_function(self, params=(), results=(), body="", locals=(), export=None, name=None):
        if isinstance(body, str):
            body = parse_instructions(body)
        body = list(body)
        if _open_blocks(body) >= 0:
            body.append(Instr("end"))
        func = Function(self.type_index(params, results), list(locals), body)
        self.module.functions.append(func)
        index = self.module.num_funcs - 1
        if export:
            self.export(export, "func", index)
        if name:
            self.module.names[index] = name
        return index

    def add_memory(self, minimum, maximum=None, export=None):
        self.module.memories.append(Limits(minimum, maximum))
        if export:
            self.export(export, "memory", len(self.module.memories) - 1)
        return len(self.module.memories) - 1

    def add_data(self, offset, data, memory=0):
        self.module.data.append(
            DataSegment(memory, [Instr("i32.const", offset)], bytes(data))
        )

    def add_global(self, value_type, value=0, mutable=False, export=None):
        init = [Instr(f"{value_type}.const", value)]
        self.module.globals.append(Global(GlobalType(value_type, mutable), init))
        index = len(self.module.global_types()) - 1
        if export:
            self.export(export, "global", index)
        return index

    def add_table(self, minimum, maximum=None):
        self.module.tables.append(TableType("funcref", Limits(minimum, maximum)))
        return len(self.module.tables) - 1

    def add_elements(self, offset, funcs, table=0):
        self.module.elements.append(
            ElemSegment(table, [Instr("i32.const", offset)], list(funcs))
        )

    def set_start(self, func_index):
        self.module.start = func_index

    def export(self, name, kind, index):
        self.module.exports.append(Export(name, kind, index))

    def build(self):
        if self.module.names:
            customs = [c for c in self.module.customs if c[0] != "name"]
            customs.append(("name", encode_name_section(self.module.names)))
            self.module.customs = customs
        return self.module

    def encode(self):
        return encode_module(self.build())


def _open_blocks(body):
    """Nesting depth left open by ``body`` (-1 when the function end is present)."""
    depth = 0
    for instr in body:
        if instr.op in ("block", "loop", "if"):
            depth += 1
        elif instr.op == "end":
            depth -= 1
    return depth


__all__ = [
    "ModuleBuilder",
    "encode_instructions",
    "encode_module",
    "encode_name_section",
    "sleb",
    "u32",
]
