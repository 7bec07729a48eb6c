"""Target-level building blocks: registers, the virtual stack and command buffers.

Every value the generated program manipulates lives in a scoreboard *fake
player* on the ``wasm`` objective.  This module owns the naming of those
registers and a small buffer that renders the handful of command shapes the
emitter relies on.
"""
from __future__ import annotations

from dataclasses import dataclass

from ..constants import INT32_MIN, OBJECTIVE
from .errors import EmitError


def wrap32(value):
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def split64(value):
    """Low and high words (as signed 32-bit values) of a 64-bit integer."""
    value &= 0xFFFFFFFFFFFFFFFF
    return wrap32(value), wrap32(value >> 32)


def _reg(prefix, index, hi):
    return f"%{prefix}{index}{'h' if hi else ''}"


def slot(depth, hi=False):
    return _reg("s", depth, hi)


def local(index, hi=False):
    return _reg("l", index, hi)


def global_(index, hi=False):
    return _reg("g", index, hi)


def result(index, hi=False):
    return _reg("r", index, hi)


def arg(index, hi=False):
    return _reg("arg", index, hi)


def const_reg(value):
    return f"%c{wrap32(value)}"


def score(reg):
    return f"{reg} {OBJECTIVE}"


def matches(reg, spec):
    return f"score {score(reg)} matches {spec}"


def compare(a, operator, b):
    return f"score {score(a)} {operator} {score(b)}"


@dataclass
class StackValue:
    slot: int
    type: str | None
    const: int | None = None


class VirtualStack:
    """Compile-time model of the operand stack of one activation.

    Slot ``d`` is register ``%s<d>``; the stack pointer is tracked here rather
    than at runtime, since the validator fixes the height at every
    instruction.  Slots written by a constant push remember that constant so
    the lowerer can specialize shifts and masks.
    """

    def __init__(self, height=0):
        self.values = [StackValue(i, None) for i in range(height)]

    @property
    def height(self):
        return len(self.values)

    def push(self, value_type, const=None):
        value = StackValue(len(self.values), value_type, const)
        self.values.append(value)
        return value.slot

    def pop(self):
        if not self.values:
            raise EmitError("virtual stack underflow")
        return self.values.pop()

    def peek(self, depth=0):
        if depth >= len(self.values):
            raise EmitError("virtual stack underflow")
        return self.values[-1 - depth]

    def truncate(self, height):
        del self.values[height:]
        while len(self.values) < height:
            self.values.append(StackValue(len(self.values), None))


class CommandBuffer:
    """Accumulates command strings for one command function."""

    def __init__(self, namespace, constants=None):
        self.namespace = namespace
        self.lines = []
        self.constants = constants if constants is not None else set()

    def emit(self, line):
        self.lines.append(line)

    def extend(self, lines):
        self.lines.extend(lines)

    def fn(self, path):
        return f"{self.namespace}:{path}"

    # -- scoreboard -----------------------------------------------------

    def const(self, value):
        value = wrap32(value)
        self.constants.add(value)
        return const_reg(value)

    def set(self, reg, value):
        self.emit(f"scoreboard players set {score(reg)} {wrap32(value)}")

    def add(self, reg, value):
        value = wrap32(value)
        if value > 0:
            self.emit(f"scoreboard players add {score(reg)} {value}")
        elif value == INT32_MIN:
            self.op(reg, "+=", self.const(value))
        elif value < 0:
            self.emit(f"scoreboard players remove {score(reg)} {-value}")

    def op(self, a, operator, b):
        self.emit(f"scoreboard players operation {score(a)} {operator} {score(b)}")

    def copy(self, dst, src):
        if dst != src:
            self.op(dst, "=", src)

    def copy_value(self, dst, src, wide):
        """Copy a (possibly two-word) value from register base ``src`` to ``dst``."""
        self.copy(dst, src)
        if wide:
            self.copy(dst + "h", src + "h")

    def store_condition(self, dst, *tests):
        """``dst`` becomes 1 when every ``if``/``unless`` test passes, else 0."""
        self.emit(f"execute store result score {score(dst)} {' '.join(tests)}")

    def when(self, condition, command, negate=False):
        keyword = "unless" if negate else "if"
        self.emit(f"execute {keyword} {condition} run {command}")

    def when_all(self, tests, command):
        self.emit(f"execute {' '.join(tests)} run {command}")

    # -- control --------------------------------------------------------

    def call(self, path):
        self.emit(f"function {self.fn(path)}")

    def call_with(self, path, storage, nbt_path):
        self.emit(f"function {self.fn(path)} with storage {self.fn(storage)} {nbt_path}")

    def tail(self, path):
        return f"return run function {self.fn(path)}"

    def jump(self, path):
        self.emit(self.tail(path))

    def trap(self, kind, *tests):
        command = self.tail(f"rt/trap/{kind}")
        if tests:
            self.when_all(tests, command)
        else:
            self.emit(command)


__all__ = [
    "CommandBuffer",
    "StackValue",
    "VirtualStack",
    "arg",
    "compare",
    "const_reg",
    "global_",
    "local",
    "matches",
    "result",
    "score",
    "slot",
    "split64",
    "wrap32",
]
