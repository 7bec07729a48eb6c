"""Reference execution of binary modules on wasmtime.

The binary the compiler consumed is instantiated on wasmtime with the
built-in host primitives emulated in Python, and each call is reported as an
:class:`~.commandvm.ExecutionResult`, so that runs of the datapack simulator
can be compared against an independent WebAssembly engine.  Host primitives
with user-supplied command templates have no Python behaviour and are
rejected.
"""
from __future__ import annotations

import itertools
import logging
import math
import random

try:
    import wasmtime
except ModuleNotFoundError:  # pragma: no cover
    wasmtime = None

from ..constants import MAX_FILL_VOLUME, TRAP_MESSAGES, TURTLE_CLIPBOARD, TURTLE_PALETTE
from .commandvm import ExecutionResult, bits_to_float, from_bits, to_bits

logger = logging.getLogger(__name__)

MASK32 = 0xFFFFFFFF

# wasmtime ``TrapCode`` names and the trap kinds they correspond to.
WASMTIME_TRAPS = {
    "UNREACHABLE": "unreachable",
    "INT_DIVISION_BY_ZERO": "divide_by_zero",
    "INT_OVERFLOW": "integer_overflow",
    "BAD_CONVERSION_TO_INT": "invalid_conversion_to_integer",
    "MEMORY_OUT_OF_BOUNDS": "out_of_bounds_memory_access",
    "HEAP_MISALIGNED": "out_of_bounds_memory_access",
    "BAD_SIGNATURE": "indirect_call_type_mismatch",
    "TABLE_OUT_OF_BOUNDS": "undefined_element",
    "INDIRECT_CALL_TO_NULL": "uninitialized_element",
    "STACK_OVERFLOW": "call_stack_exhausted",
}


class Trap(Exception):
    """A WebAssembly trap; ``kind`` is one of the ``TRAP_CODES`` names."""

    def __init__(self, kind):
        self.kind = kind
        super().__init__(kind)


class ProcExit(Exception):
    def __init__(self, code):
        self.code = code
        super().__init__(f"exit {code}")


def _require_wasmtime():
    if wasmtime is None:
        raise RuntimeError("Reference execution requires the 'wasmtime' package to be installed")


def wat_to_wasm(text):
    """Assemble WebAssembly text into a binary module."""
    _require_wasmtime()
    return bytes(wasmtime.wat2wasm(text))


def trap_kind(error):
    """Trap kind of a wasmtime error, or None when it is not a known trap."""
    code = getattr(error, "trap_code", None)
    if code is not None and code.name in WASMTIME_TRAPS:
        return WASMTIME_TRAPS[code.name]
    message = str(error)
    if "unreachable" in message:
        return "unreachable"
    for kind, text in TRAP_MESSAGES.items():
        if text in message:
            return kind
    return None


def values_agree(types, got, expected):
    """Compare canonical values; any two NaNs of a float type agree."""
    if len(got) != len(expected):
        return False
    for value_type, a, b in zip(types, got, expected):
        if value_type in ("f32", "f64"):
            fa, fb = bits_to_float(value_type, a), bits_to_float(value_type, b)
            if math.isnan(fa) or math.isnan(fb):
                if not (math.isnan(fa) and math.isnan(fb)):
                    return False
                continue
        if a != b:
            return False
    return True


def _to_wasm(value_type, value):
    bits = to_bits(value_type, value)
    if value_type in ("f32", "f64"):
        return bits_to_float(value_type, bits)
    return from_bits(value_type, bits)


def _from_wasm(value_type, value):
    return from_bits(value_type, to_bits(value_type, value))


class ReferenceInstance:
    """An instance of a binary module on wasmtime."""

    def __init__(self, data, seed=0):
        _require_wasmtime()
        self.random = random.Random(seed)
        self.output = []
        self.chars = []
        self.turtle = [0, 0, 0]
        self.blocks = {}
        self.stopped = None
        engine = wasmtime.Engine()
        self.store = wasmtime.Store(engine)
        self.module = wasmtime.Module(engine, bytes(data))
        self.instance = wasmtime.Instance(self.store, self.module, self.construct_imports())
        self.exports = self.instance.exports(self.store)
        logger.debug("instantiated module with %d imports", len(self.module.imports))

    # -- imports --------------------------------------------------------

    def host_callbacks(self):
        return {
            "env.print": self.output.append,
            "env.print_i64": self.output.append,
            "env.putc": self.chars.append,
            "env.rand": lambda: self.random.randint(0, 2147483646),
            "env.turtle_x": lambda value: self.move(0, value),
            "env.turtle_y": lambda value: self.move(1, value),
            "env.turtle_z": lambda value: self.move(2, value),
            "env.turtle_set_block": lambda index: self.fill(index, 0, 0, 0),
            "env.turtle_get_block": self.get_block,
            "env.turtle_fill": self.fill,
            "env.turtle_copy": lambda: self.copy_region(0, 0, 0),
            "env.turtle_paste": lambda: self.paste_region(0, 0, 0, False),
            "env.turtle_copy_region": self.copy_region,
            "env.turtle_paste_region_masked": lambda dx, dy, dz: self.paste_region(dx, dy, dz, True),
            "env.memset": self.memset,
            "wasi_snapshot_preview1.proc_exit": self.proc_exit,
        }

    def construct_imports(self):
        callbacks = self.host_callbacks()
        imports = []
        for imp in self.module.imports:
            key = f"{imp.module}.{imp.name}"
            if key not in callbacks or not isinstance(imp.type, wasmtime.FuncType):
                raise RuntimeError(f"no reference behaviour for import {key}")
            imports.append(
                wasmtime.Func(self.store, imp.type, callbacks[key], access_caller=key == "env.memset")
            )
        return imports

    # -- host primitives ------------------------------------------------

    def move(self, axis, value):
        self.turtle[axis] = value

    def block_at(self, x, y, z):
        return self.blocks.get((x, y, z), "minecraft:air")

    def get_block(self):
        block = self.block_at(*self.turtle)
        return TURTLE_PALETTE.index(block) if block in TURTLE_PALETTE else -1

    def region(self, dx, dy, dz):
        """Lower corner and per-axis sizes of the box spanned from the turtle."""
        low = [min(p, p + d) for p, d in zip(self.turtle, (dx, dy, dz))]
        sizes = [abs(d) + 1 for d in (dx, dy, dz)]
        if sizes[0] * sizes[1] * sizes[2] > MAX_FILL_VOLUME:
            return low, None
        return low, sizes

    def positions(self, origin, sizes):
        for offset in itertools.product(*(range(size) for size in sizes)):
            yield offset, tuple(o + d for o, d in zip(origin, offset))

    def fill(self, index, dx, dy, dz):
        low, sizes = self.region(dx, dy, dz)
        if not 0 <= index < len(TURTLE_PALETTE) or sizes is None:
            return
        for _, position in self.positions(low, sizes):
            self.blocks[position] = TURTLE_PALETTE[index]

    def copy_region(self, dx, dy, dz):
        low, sizes = self.region(dx, dy, dz)
        if sizes is None:
            return
        copied = {}
        for offset, position in self.positions(low, sizes):
            target = tuple(c + d for c, d in zip(TURTLE_CLIPBOARD, offset))
            copied[target] = self.block_at(*position)
        self.blocks.update(copied)

    def paste_region(self, dx, dy, dz, masked):
        low, sizes = self.region(dx, dy, dz)
        if sizes is None:
            return
        pasted = {}
        for offset, source in self.positions(TURTLE_CLIPBOARD, sizes):
            block = self.block_at(*source)
            if masked and block == "minecraft:air":
                continue
            pasted[tuple(p + d for p, d in zip(low, offset))] = block
        self.blocks.update(pasted)

    def memset(self, caller, dest, value, length):
        memory = caller.get("memory")
        size = memory.data_len(caller) if memory is not None else 0
        start, count = dest & MASK32, length & MASK32
        if start + count > size:
            self.stopped = Trap("out_of_bounds_memory_access")
            raise self.stopped
        if count:
            memory.write(caller, bytes([value & 0xFF]) * count, start)
        return dest

    def proc_exit(self, code):
        self.stopped = ProcExit(code)
        raise self.stopped

    # -- calls ----------------------------------------------------------

    def read_memory(self, address, length):
        memory = self.exports["memory"]
        return bytes(memory.read(self.store, address, address + length))

    def call(self, name, *args):
        """Call an export; returns the canonical results or raises :class:`Trap`."""
        try:
            func = self.exports[name]
        except KeyError:
            raise KeyError(f"no exported function {name!r}") from None
        if not isinstance(func, wasmtime.Func):
            raise KeyError(f"no exported function {name!r}")
        func_type = func.type(self.store)
        params = [str(t) for t in func_type.params]
        results = [str(t) for t in func_type.results]
        if len(args) != len(params):
            raise TypeError(f"{name} expects {len(params)} arguments, got {len(args)}")

        self.stopped = None
        try:
            values = func(self.store, *(_to_wasm(t, v) for t, v in zip(params, args)))
        except (ProcExit, Trap):
            raise
        except (wasmtime.Trap, wasmtime.WasmtimeError) as exc:
            if self.stopped is not None:
                raise self.stopped from None
            kind = trap_kind(exc)
            if kind is None:
                raise
            raise Trap(kind) from None
        if len(results) == 1:
            values = [values]
        elif values is None:
            values = []
        return [_from_wasm(t, v) for t, v in zip(results, values)]

    def run(self, name, *args):
        """Like :meth:`call` but reports traps and exits in an :class:`ExecutionResult`."""
        out_before = len(self.output)
        chars_before = len(self.chars)
        results, trap, exit_code = [], None, None
        try:
            results = self.call(name, *args)
        except Trap as exc:
            trap = exc.kind
        except ProcExit as exc:
            exit_code = exc.code
        text = "".join(chr(c) for c in self.chars[chars_before:] if 0 <= c < 0x110000)
        return ExecutionResult(results, trap, 0, exit_code, self.output[out_before:], text)


__all__ = [
    "ProcExit",
    "ReferenceInstance",
    "Trap",
    "WASMTIME_TRAPS",
    "trap_kind",
    "values_agree",
    "wat_to_wasm",
]
