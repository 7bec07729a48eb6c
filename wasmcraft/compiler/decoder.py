"""Binary decoder for WebAssembly modules."""
from __future__ import annotations

import logging

from ..constants import (
    EMPTY_BLOCK_TYPE,
    EXTERNAL_KINDS,
    EXTERNREF,
    FUNCREF,
    FUNC_TYPE_FORM,
    SECTION_NAMES,
    SECTION_ORDER,
    UNSUPPORTED_OPCODES,
    UNSUPPORTED_PREFIXES,
    VALUE_TYPES,
    WASM_MAGIC,
    WASM_VERSION,
)
from .errors import UnsupportedFeature, ValidationError
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
from .opcodes import OPCODES

logger = logging.getLogger(__name__)

MAX_LOCALS = 50000


class _Reader:
    """Cursor over a byte buffer that reports errors with section context."""

    def __init__(self, data, pos=0, end=None, section=None):
        self.data = data
        self.pos = pos
        self.end = len(data) if end is None else end
        self.section = section

    def error(self, message, offset=None):
        return ValidationError(
            message, section=self.section, offset=self.pos if offset is None else offset
        )

    @property
    def at_end(self):
        return self.pos >= self.end

    def byte(self):
        if self.pos >= self.end:
            raise self.error("unexpected end")
        value = self.data[self.pos]
        self.pos += 1
        return value

    def peek(self):
        if self.pos >= self.end:
            raise self.error("unexpected end")
        return self.data[self.pos]

    def raw(self, count):
        if self.pos + count > self.end:
            raise self.error("unexpected end")
        chunk = bytes(self.data[self.pos:self.pos + count])
        self.pos += count
        return chunk

    def _leb(self, bits, signed):
        start = self.pos
        result = shift = 0
        for _ in range((bits + 6) // 7):
            b = self.byte()
            result |= (b & 0x7F) << shift
            shift += 7
            if not b & 0x80:
                break
        else:
            raise self.error("integer representation too long", start)
        if signed:
            if b & 0x40:
                result -= 1 << shift
            if not -(1 << (bits - 1)) <= result < (1 << (bits - 1)):
                raise self.error("integer too large", start)
        elif result >= 1 << bits:
            raise self.error("integer too large", start)
        return result

    def u32(self):
        return self._leb(32, False)

    def s32(self):
        return self._leb(32, True)

    def s33(self):
        return self._leb(33, True)

    def s64(self):
        return self._leb(64, True)

    def name(self):
        raw = self.raw(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise self.error("malformed UTF-8 encoding") from None

    def vector(self, func):
        return [func() for _ in range(self.u32())]

    def value_type(self):
        offset = self.pos
        code = self.byte()
        if code in VALUE_TYPES:
            return VALUE_TYPES[code]
        if code in (FUNCREF, EXTERNREF):
            raise UnsupportedFeature("reference-types", "reference-typed value", offset)
        if code == 0x7B:
            raise UnsupportedFeature("simd", "v128 value", offset)
        raise self.error(f"invalid value type 0x{code:02x}", offset)


def _read_functype(r):
    offset = r.pos
    form = r.byte()
    if form != FUNC_TYPE_FORM:
        raise r.error(f"invalid function type form 0x{form:02x}", offset)
    params = r.vector(r.value_type)
    results = r.vector(r.value_type)
    return FuncType(params, results)


def _read_limits(r):
    offset = r.pos
    flags = r.byte()
    if flags in (0x02, 0x03):
        raise UnsupportedFeature("threads", "shared memory", offset)
    if 0x04 <= flags <= 0x07:
        raise UnsupportedFeature("memory64", "64-bit limits", offset)
    if flags == 0x00:
        return Limits(r.u32())
    if flags == 0x01:
        minimum = r.u32()
        return Limits(minimum, r.u32())
    raise r.error(f"invalid limits flags 0x{flags:02x}", offset)


def _read_tabletype(r):
    offset = r.pos
    code = r.byte()
    if code == EXTERNREF:
        raise UnsupportedFeature("reference-types", "externref table", offset)
    if code != FUNCREF:
        raise r.error(f"invalid element type 0x{code:02x}", offset)
    return TableType("funcref", _read_limits(r))


def _read_globaltype(r):
    value_type = r.value_type()
    offset = r.pos
    mutability = r.byte()
    if mutability not in (0, 1):
        raise r.error("malformed mutability", offset)
    return GlobalType(value_type, bool(mutability))


def _read_blocktype(r):
    code = r.peek()
    if code == EMPTY_BLOCK_TYPE:
        r.byte()
        return None
    if code in VALUE_TYPES:
        r.byte()
        return VALUE_TYPES[code]
    if code in (FUNCREF, EXTERNREF):
        raise UnsupportedFeature("reference-types", "reference-typed block", r.pos)
    offset = r.pos
    index = r.s33()
    if index < 0:
        raise r.error("invalid block type", offset)
    return index


def _read_immediate(r, kind, offset):
    if kind is None:
        return None
    if kind == "block":
        return _read_blocktype(r)
    if kind in ("label", "func", "local", "global"):
        return r.u32()
    if kind == "br_table":
        labels = tuple(r.vector(r.u32))
        return (labels, r.u32())
    if kind == "call_indirect":
        type_index = r.u32()
        return (type_index, r.u32())
    if kind == "memarg":
        align = r.u32()
        if align & 0x40:
            raise UnsupportedFeature("multi-memory", "memory index in memarg", offset)
        return (align, r.u32())
    if kind == "memory":
        if r.byte() != 0x00:
            raise UnsupportedFeature("multi-memory", "memory index", offset)
        return 0
    if kind == "i32":
        return r.s32()
    if kind == "i64":
        return r.s64()
    if kind == "f32":
        return int.from_bytes(r.raw(4), "little")
    if kind == "f64":
        return int.from_bytes(r.raw(8), "little")
    if kind == "select_t":
        return tuple(r.vector(r.value_type))
    raise r.error(f"unknown immediate kind {kind}", offset)  # pragma: no cover


def read_instructions(r, keep_end=False):
    """Read an instruction sequence up to its terminating ``end``."""
    instrs = []
    depth = 0
    while True:
        offset = r.pos
        code = r.byte()
        if code in UNSUPPORTED_PREFIXES:
            sub = r.u32()
            raise UnsupportedFeature(
                UNSUPPORTED_PREFIXES[code], f"0x{code:02x} 0x{sub:x}", offset
            )
        if code in UNSUPPORTED_OPCODES:
            feature, construct = UNSUPPORTED_OPCODES[code]
            raise UnsupportedFeature(feature, construct, offset)
        entry = OPCODES.get(code)
        if entry is None:
            raise r.error(f"illegal opcode 0x{code:02x}", offset)
        op, kind = entry
        imm = _read_immediate(r, kind, offset)
        if op in ("block", "loop", "if"):
            depth += 1
        elif op == "end":
            if depth == 0:
                if keep_end:
                    instrs.append(Instr(op, imm, offset))
                return instrs
            depth -= 1
        instrs.append(Instr(op, imm, offset))


def _read_import(r):
    module = r.name()
    name = r.name()
    offset = r.pos
    kind = r.byte()
    if kind == 0:
        return Import(module, name, "func", r.u32())
    if kind == 1:
        return Import(module, name, "table", _read_tabletype(r))
    if kind == 2:
        return Import(module, name, "memory", _read_limits(r))
    if kind == 3:
        return Import(module, name, "global", _read_globaltype(r))
    raise r.error(f"invalid import kind 0x{kind:02x}", offset)


def _read_export(r):
    name = r.name()
    offset = r.pos
    kind = r.byte()
    if kind not in EXTERNAL_KINDS:
        raise r.error(f"invalid export kind 0x{kind:02x}", offset)
    return Export(name, EXTERNAL_KINDS[kind], r.u32())


def _read_elemkind(r):
    offset = r.pos
    if r.byte() != 0x00:
        raise r.error("invalid element kind", offset)


def _read_element(r):
    offset = r.pos
    flags = r.u32()
    if flags == 0:
        expr = read_instructions(r)
        return ElemSegment(0, expr, r.vector(r.u32))
    if flags == 1:
        _read_elemkind(r)
        return ElemSegment(0, None, r.vector(r.u32), mode="passive")
    if flags == 2:
        table = r.u32()
        expr = read_instructions(r)
        _read_elemkind(r)
        return ElemSegment(table, expr, r.vector(r.u32))
    if flags == 3:
        _read_elemkind(r)
        return ElemSegment(0, None, r.vector(r.u32), mode="declarative")
    if 4 <= flags <= 7:
        raise UnsupportedFeature("reference-types", "element expressions", offset)
    raise r.error(f"invalid element segment flags {flags}", offset)


def _read_data(r):
    offset = r.pos
    flags = r.u32()
    if flags == 0:
        expr = read_instructions(r)
        return DataSegment(0, expr, r.raw(r.u32()))
    if flags == 1:
        return DataSegment(0, None, r.raw(r.u32()), mode="passive")
    if flags == 2:
        memory = r.u32()
        expr = read_instructions(r)
        return DataSegment(memory, expr, r.raw(r.u32()))
    raise r.error(f"invalid data segment flags {flags}", offset)


def _read_code(r):
    size = r.u32()
    start = r.pos
    end = start + size
    if end > r.end:
        raise r.error("unexpected end of code entry")
    body = _Reader(r.data, start, end, r.section)
    local_types = []
    for _ in range(body.u32()):
        count = body.u32()
        value_type = body.value_type()
        if len(local_types) + count > MAX_LOCALS:
            raise body.error("too many locals")
        local_types.extend([value_type] * count)
    instrs = read_instructions(body, keep_end=True)
    if body.pos != end:
        raise body.error("section size mismatch")
    r.pos = end
    return local_types, instrs, start


def _read_names(data, start, end, module):
    r = _Reader(data, start, end, "custom:name")
    while not r.at_end:
        sub_id = r.byte()
        size = r.u32()
        sub_end = r.pos + size
        if sub_end > end:
            raise r.error("unexpected end")
        if sub_id == 1:
            sub = _Reader(data, r.pos, sub_end, r.section)
            for _ in range(sub.u32()):
                index = sub.u32()
                module.names[index] = sub.name()
        r.pos = sub_end


def decode_module(data):
    """Decode a binary module into a :class:`Module` descriptor."""
    data = bytes(data)
    r = _Reader(data, section="header")
    if len(data) < 4 or data[:4] != WASM_MAGIC:
        raise ValidationError("magic header not detected", section="header", offset=0)
    r.pos = 4
    if len(data) < 8:
        raise ValidationError("unexpected end", section="header", offset=4)
    version = int.from_bytes(r.raw(4), "little")
    if version != WASM_VERSION:
        raise ValidationError(f"unknown binary version {version}", section="header", offset=4)

    module = Module()
    func_decls = None
    codes = None
    last_rank = -1

    while not r.at_end:
        header = r.pos
        section_id = r.byte()
        if section_id not in SECTION_NAMES:
            raise ValidationError(
                f"malformed section id {section_id}", section="header", offset=header
            )
        section = SECTION_NAMES[section_id]
        r.section = section
        size = r.u32()
        start = r.pos
        end = start + size
        if end > len(data):
            raise ValidationError("section size mismatch", section=section, offset=header)

        if section_id != 0:
            rank = SECTION_ORDER.index(section_id)
            if rank <= last_rank:
                raise ValidationError(
                    "unexpected content after last section", section=section, offset=header
                )
            last_rank = rank

        s = _Reader(data, start, end, section)
        if section_id == 0:
            name = s.name()
            payload = data[s.pos:end]
            module.customs.append((name, payload))
            if name == "name":
                try:
                    _read_names(data, s.pos, end, module)
                except ValidationError as exc:
                    logger.debug("ignoring malformed name section: %s", exc)
            s.pos = end
        elif section_id == 1:
            module.types = s.vector(lambda: _read_functype(s))
        elif section_id == 2:
            module.imports = s.vector(lambda: _read_import(s))
        elif section_id == 3:
            func_decls = s.vector(s.u32)
        elif section_id == 4:
            module.tables = s.vector(lambda: _read_tabletype(s))
        elif section_id == 5:
            module.memories = s.vector(lambda: _read_limits(s))
        elif section_id == 6:
            module.globals = s.vector(
                lambda: Global(_read_globaltype(s), read_instructions(s))
            )
        elif section_id == 7:
            module.exports = s.vector(lambda: _read_export(s))
        elif section_id == 8:
            module.start = s.u32()
        elif section_id == 9:
            module.elements = s.vector(lambda: _read_element(s))
        elif section_id == 12:
            module.data_count = s.u32()
        elif section_id == 10:
            codes = s.vector(lambda: _read_code(s))
        elif section_id == 11:
            module.data = s.vector(lambda: _read_data(s))

        if s.pos != end:
            raise ValidationError("section size mismatch", section=section, offset=s.pos)
        r.pos = end
        logger.debug("decoded %s section (%d bytes)", section, size)

    func_decls = func_decls or []
    codes = codes or []
    if len(func_decls) != len(codes):
        raise ValidationError(
            "function and code section have inconsistent lengths", section="code"
        )
    if module.data_count is not None and module.data_count != len(module.data):
        raise ValidationError("data count and data section have inconsistent lengths", section="data")

    for type_index, (local_types, body, offset) in zip(func_decls, codes):
        module.functions.append(Function(type_index, local_types, body, offset))

    logger.info(
        "decoded module: %d types, %d imports, %d functions",
        len(module.types),
        len(module.imports),
        len(module.functions),
    )
    return module


__all__ = [
    "decode_module",
    "read_instructions",
]
