"""Type checking and annotation of decoded modules."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..constants import VALUE_TYPES
from .errors import UnsupportedFeature, ValidationError
from .module import FuncType
from .opcodes import MEMORY_ACCESS, SIGNATURES

logger = logging.getLogger(__name__)

MAX_MEMORY_PAGES = 65536
NUMERIC_TYPES = frozenset(VALUE_TYPES.values())


@dataclass
class _Control:
    kind: str
    block_type: FuncType
    height: int
    unreachable: bool = False

    @property
    def label_types(self):
        if self.kind == "loop":
            return self.block_type.params
        return self.block_type.results


def resolve_block_type(module, imm, offset=None):
    """Turn a block type immediate into a :class:`FuncType`."""
    if imm is None:
        return FuncType()
    if isinstance(imm, str):
        return FuncType((), (imm,))
    if not 0 <= imm < len(module.types):
        raise ValidationError(f"unknown type {imm}", section="code", offset=offset)
    return module.types[imm]


class FunctionValidator:
    """Validate one function body and annotate its instructions in place."""

    def __init__(self, module, func_index):
        self.module = module
        self.func_index = func_index
        self.func_type = module.func_type(func_index)
        self.locals = module.function_locals(func_index)
        self.globals = module.global_types()
        self.tables = module.table_types()
        self.memories = module.memory_types()
        self.vals = []
        self.ctrls = []
        self.offset = None

    def error(self, message):
        return ValidationError(message, section="code", offset=self.offset)

    # -- operand stack --------------------------------------------------

    def push(self, value_type):
        self.vals.append(value_type)

    def push_many(self, types):
        self.vals.extend(types)

    def pop(self, expect=None):
        frame = self.ctrls[-1]
        if len(self.vals) == frame.height:
            if frame.unreachable:
                return expect
            raise self.error("type mismatch: operand stack underflow")
        actual = self.vals.pop()
        if expect is not None and actual is not None and actual != expect:
            raise self.error(f"type mismatch: expected {expect}, found {actual}")
        return actual if actual is not None else expect

    def pop_many(self, types):
        popped = [self.pop(t) for t in reversed(types)]
        popped.reverse()
        return popped

    # -- control stack --------------------------------------------------

    def push_ctrl(self, kind, block_type):
        self.ctrls.append(_Control(kind, block_type, len(self.vals)))
        self.push_many(block_type.params)

    def pop_ctrl(self):
        if not self.ctrls:
            raise self.error("unexpected end")
        frame = self.ctrls[-1]
        self.pop_many(frame.block_type.results)
        if len(self.vals) != frame.height:
            raise self.error("type mismatch: values remaining on stack at end of block")
        self.ctrls.pop()
        return frame

    def set_unreachable(self):
        frame = self.ctrls[-1]
        del self.vals[frame.height:]
        frame.unreachable = True

    def label(self, depth):
        if depth >= len(self.ctrls):
            raise self.error(f"unknown label {depth}")
        return self.ctrls[-1 - depth]

    # -- driver ---------------------------------------------------------

    def validate(self):
        body = self.module.function(self.func_index).body
        self.push_ctrl("function", FuncType((), self.func_type.results))
        for instr in body:
            self.offset = instr.offset
            if not self.ctrls:
                raise self.error("operators remaining after end of function")
            instr.height = len(self.vals)
            self.step(instr)
        if self.ctrls:
            raise self.error("unexpected end of function body")

    def step(self, instr):
        op = instr.op
        imm = instr.imm

        if op == "unreachable":
            self.set_unreachable()
        elif op == "nop":
            pass
        elif op in ("block", "loop", "if"):
            block_type = resolve_block_type(self.module, imm, instr.offset)
            instr.block_type = block_type
            if op == "if":
                self.pop("i32")
            self.pop_many(block_type.params)
            self.push_ctrl(op, block_type)
        elif op == "else":
            frame = self.ctrls[-1] if self.ctrls else None
            if frame is None or frame.kind != "if":
                raise self.error("else without matching if")
            self.pop_ctrl()
            self.push_ctrl("else", frame.block_type)
        elif op == "end":
            frame = self.pop_ctrl()
            if frame.kind == "if" and frame.block_type.params != frame.block_type.results:
                raise self.error("type mismatch: if without else must not change the stack")
            self.push_many(frame.block_type.results)
            if frame.kind == "function":
                self.vals.clear()
        elif op == "br":
            self.pop_many(self.label(imm).label_types)
            self.set_unreachable()
        elif op == "br_if":
            self.pop("i32")
            types = self.label(imm).label_types
            self.push_many(self.pop_many(types))
        elif op == "br_table":
            labels, default = imm
            self.pop("i32")
            arity = len(self.label(default).label_types)
            for depth in labels:
                types = self.label(depth).label_types
                if len(types) != arity:
                    raise self.error("type mismatch: br_table targets differ in arity")
                self.push_many(self.pop_many(types))
            self.pop_many(self.label(default).label_types)
            self.set_unreachable()
        elif op == "return":
            self.pop_many(self.func_type.results)
            self.set_unreachable()
        elif op == "call":
            if not 0 <= imm < self.module.num_funcs:
                raise self.error(f"unknown function {imm}")
            callee = self.module.func_type(imm)
            instr.stack = tuple(self.vals)
            self.pop_many(callee.params)
            self.push_many(callee.results)
        elif op == "call_indirect":
            type_index, table_index = imm
            if table_index >= len(self.tables):
                raise self.error(f"unknown table {table_index}")
            if type_index >= len(self.module.types):
                raise self.error(f"unknown type {type_index}")
            callee = self.module.types[type_index]
            instr.stack = tuple(self.vals)
            self.pop("i32")
            self.pop_many(callee.params)
            self.push_many(callee.results)
        elif op == "drop":
            instr.value_type = self.pop() or "i32"
        elif op == "select":
            self.pop("i32")
            if imm:
                if len(imm) != 1:
                    raise self.error("invalid result arity")
                expect = imm[0]
            else:
                expect = None
            first = self.pop(expect)
            second = self.pop(first)
            value_type = first or second or expect or "i32"
            if value_type not in NUMERIC_TYPES:
                raise self.error("type mismatch in select")
            instr.value_type = value_type
            self.push(first or second)
        elif op == "local.get":
            self.push(self.local(imm))
        elif op == "local.set":
            self.pop(self.local(imm))
        elif op == "local.tee":
            value_type = self.local(imm)
            self.pop(value_type)
            self.push(value_type)
        elif op == "global.get":
            self.push(self.global_type(imm).type)
        elif op == "global.set":
            global_type = self.global_type(imm)
            if not global_type.mutable:
                raise self.error("global is immutable")
            self.pop(global_type.type)
        elif op in MEMORY_ACCESS:
            self.require_memory()
            _, width, _ = MEMORY_ACCESS[op]
            align, _ = imm
            if (1 << align) > width:
                raise self.error("alignment must not be larger than natural")
            params, results = SIGNATURES[op]
            self.pop_many(params)
            self.push_many(results)
        elif op == "memory.size":
            self.require_memory()
            self.push("i32")
        elif op == "memory.grow":
            self.require_memory()
            self.pop("i32")
            self.push("i32")
        elif op.endswith(".const"):
            self.push(op.split(".")[0])
        elif op in SIGNATURES:
            params, results = SIGNATURES[op]
            self.pop_many(params)
            self.push_many(results)
        else:  # pragma: no cover - the decoder only yields known opcodes
            raise self.error(f"unknown operator {op}")

    def local(self, index):
        if index >= len(self.locals):
            raise self.error(f"unknown local {index}")
        return self.locals[index]

    def global_type(self, index):
        if index >= len(self.globals):
            raise self.error(f"unknown global {index}")
        return self.globals[index]

    def require_memory(self):
        if not self.memories:
            raise self.error("unknown memory 0")


def evaluate_const(module, expr, expect, section):
    """Value of a constant expression (raw bits for floats)."""
    offset = expr[0].offset if expr else None
    if len(expr) != 1:
        raise ValidationError("constant expression required", section=section, offset=offset)
    instr = expr[0]
    if instr.op == "global.get":
        raise UnsupportedFeature("imports", "global.get in constant expression", offset)
    if not instr.op.endswith(".const"):
        raise ValidationError("constant expression required", section=section, offset=offset)
    value_type = instr.op.split(".")[0]
    if value_type != expect:
        raise ValidationError(
            f"type mismatch: expected {expect}, found {value_type}",
            section=section,
            offset=offset,
        )
    return instr.imm


def _check_limits(limits, maximum, what, section):
    if limits.min > maximum or (limits.max is not None and limits.max > maximum):
        raise ValidationError(f"{what} size must be at most {maximum}", section=section)
    if limits.max is not None and limits.max < limits.min:
        raise ValidationError("size minimum must not be greater than maximum", section=section)


def validate_module(module):
    """Validate ``module`` in place and return it."""
    for imp in module.imports:
        if imp.kind != "func":
            raise UnsupportedFeature("imports", f"imported {imp.kind} {imp.module}.{imp.name}")
        if imp.desc >= len(module.types):
            raise ValidationError(f"unknown type {imp.desc}", section="import")

    for func in module.functions:
        if func.type_index >= len(module.types):
            raise ValidationError(f"unknown type {func.type_index}", section="function")

    if len(module.tables) > 1:
        raise UnsupportedFeature("reference-types", "multiple tables")
    for table in module.tables:
        _check_limits(table.limits, 0xFFFFFFFF, "table", "table")

    if len(module.memories) > 1:
        raise UnsupportedFeature("multi-memory", "multiple memories")
    for limits in module.memories:
        _check_limits(limits, MAX_MEMORY_PAGES, "memory", "memory")

    for glob in module.globals:
        evaluate_const(module, glob.init, glob.type.type, "global")

    names = set()
    limits_by_kind = {
        "func": module.num_funcs,
        "table": len(module.table_types()),
        "memory": len(module.memory_types()),
        "global": len(module.global_types()),
    }
    for exp in module.exports:
        if exp.name in names:
            raise ValidationError(f"duplicate export name {exp.name!r}", section="export")
        names.add(exp.name)
        if exp.index >= limits_by_kind[exp.kind]:
            raise ValidationError(f"unknown {exp.kind} {exp.index}", section="export")

    if module.start is not None:
        if module.start >= module.num_funcs:
            raise ValidationError(f"unknown function {module.start}", section="start")
        if module.func_type(module.start) != FuncType():
            raise ValidationError("start function must have type () -> ()", section="start")

    for segment in module.elements:
        if segment.mode == "active":
            if segment.table >= len(module.table_types()):
                raise ValidationError(f"unknown table {segment.table}", section="element")
            evaluate_const(module, segment.offset, "i32", "element")
        for func_index in segment.funcs:
            if func_index >= module.num_funcs:
                raise ValidationError(f"unknown function {func_index}", section="element")

    for segment in module.data:
        if segment.mode == "active":
            if segment.memory >= len(module.memory_types()):
                raise ValidationError(f"unknown memory {segment.memory}", section="data")
            evaluate_const(module, segment.offset, "i32", "data")

    for func_index in range(module.num_imported_funcs, module.num_funcs):
        FunctionValidator(module, func_index).validate()

    logger.debug("validated %d functions", len(module.functions))
    return module


__all__ = [
    "FunctionValidator",
    "evaluate_const",
    "resolve_block_type",
    "validate_module",
]
