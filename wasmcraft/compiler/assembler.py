"""Assemble the command functions of a whole module into a datapack image.

The assembler compiles each defined function independently (optionally on a
thread pool), adds the runtime library, the ``call_indirect`` dispatchers,
one wrapper per exported function and the ``init`` function that lays out
memory, globals and tables.  The result is an :class:`AssembledModule`; its
contents depend only on the input module and the options, never on worker
scheduling, so compiling the same bytes twice yields identical output.
"""
from __future__ import annotations

import hashlib
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ..constants import (
    DEFAULT_BUDGET,
    DEFAULT_JOBS,
    DEFAULT_MAX_DEPTH,
    DEFAULT_NAMESPACE,
    MANIFEST_FORMAT,
    MAX_PAGES,
    OBJECTIVE,
    PAGE_SIZE,
    TRAP_CODES,
    WORDS_PER_PAGE,
)
from .decoder import decode_module
from .emitter import (
    CommandFunction,
    block_path,
    dispatch,
    dispatcher_path,
    emit_function,
)
from .errors import EmitError, ResourceLimitExceeded, UnsupportedFeature, ValidationError
from .hostfuncs import resolve_imports
from .intrinsics import build_runtime
from .lir import CommandBuffer, arg, local, matches, split64, wrap32
from .module import is_wide
from .softfloat import lower_floats
from .validator import evaluate_const, validate_module

logger = logging.getLogger(__name__)

NAMESPACE_PATTERN = re.compile(r"^[a-z0-9_.\-]+$")
FUNCTION_NAME_PATTERN = re.compile(r"^[a-z0-9_.\-]+:[a-z0-9_.\-/]+$")
MAX_NAME_LENGTH = 256
MAX_EXPORT_NAME_LENGTH = 64


@dataclass
class CompileOptions:
    """Knobs that shape the generated datapack."""

    namespace: str = DEFAULT_NAMESPACE
    budget: int | None = DEFAULT_BUDGET
    max_depth: int = DEFAULT_MAX_DEPTH
    jobs: int = DEFAULT_JOBS
    comments: bool = False

    def __post_init__(self):
        self.namespace = (self.namespace or "").strip()
        if self.budget is not None:
            self.budget = int(self.budget)
            if self.budget < 1:
                raise ValueError("budget must be positive (use None to disable)")
        self.max_depth = int(self.max_depth)
        if self.max_depth < 1:
            raise ValueError("max_depth must be positive")
        self.jobs = int(self.jobs)
        if self.jobs < 1:
            raise ValueError("jobs must be positive")

    def to_dict(self):
        return {
            "namespace": self.namespace,
            "budget": self.budget,
            "max_depth": self.max_depth,
        }


@dataclass
class AssembledModule:
    """The complete set of command functions for one module."""

    namespace: str
    functions: dict
    manifest: dict
    load: list
    tick: list
    outputs: list = field(default_factory=list, repr=False)

    def __getitem__(self, name):
        if ":" not in name:
            name = f"{self.namespace}:{name}"
        return self.functions[name]

    def __contains__(self, name):
        if ":" not in name:
            name = f"{self.namespace}:{name}"
        return name in self.functions

    def __len__(self):
        return len(self.functions)

    def names(self, prefix=""):
        """Function names whose path starts with ``prefix``."""
        return [
            name for name, func in self.functions.items() if func.path.startswith(prefix)
        ]

    @property
    def command_count(self):
        return sum(len(func) for func in self.functions.values())

    @property
    def digest(self):
        return self.manifest["digest"]

    def export_function(self, export_name):
        try:
            return self.manifest["exports"][export_name]["function"]
        except KeyError:
            raise KeyError(f"no exported function {export_name!r}") from None

    def write(self, directory):
        from ..datapack import write_datapack

        return write_datapack(self, directory)


def functions_digest(functions):
    """SHA-256 over function names and commands in name order."""
    digest = hashlib.sha256()
    for name in sorted(functions):
        digest.update(name.encode("utf-8") + b"\n")
        for command in functions[name].commands:
            digest.update(command.encode("utf-8") + b"\n")
        digest.update(b"\0")
    return digest.hexdigest()


def sanitize_export_name(name):
    cleaned = re.sub(r"[^a-z0-9_.\-]", "_", name.lower()).strip("._")
    return (cleaned or "export")[:MAX_EXPORT_NAME_LENGTH]


def validate_function_name(name):
    if len(name) > MAX_NAME_LENGTH:
        raise EmitError(f"function name too long ({len(name)} > {MAX_NAME_LENGTH}): {name[:40]}...")
    if not FUNCTION_NAME_PATTERN.match(name):
        raise EmitError(f"invalid function name {name!r}")


# -- module layout ---------------------------------------------------------


def memory_layout(module):
    """``(min_pages, max_pages)`` of the module memory, or None."""
    memories = module.memory_types()
    if not memories:
        return None
    limits = memories[0]
    if limits.min > MAX_PAGES:
        raise ResourceLimitExceeded("memory pages", limits.min, MAX_PAGES)
    if limits.max is not None and limits.max > MAX_PAGES:
        raise ResourceLimitExceeded("memory maximum pages", limits.max, MAX_PAGES)
    return limits.min, MAX_PAGES if limits.max is None else limits.max


def data_image(module, min_pages):
    """Initial memory as ``{word_index: value}`` for every nonzero word."""
    words = {}
    limit = min_pages * PAGE_SIZE
    for number, segment in enumerate(module.data):
        if segment.mode != "active":
            continue
        start = evaluate_const(module, segment.offset, "i32", "data") & 0xFFFFFFFF
        if start + len(segment.data) > limit:
            raise ValidationError(
                f"data segment {number} does not fit in memory "
                f"({start} + {len(segment.data)} > {limit})",
                section="data",
            )
        for position, byte in enumerate(segment.data):
            address = start + position
            word, shift = divmod(address, 4)
            shift *= 8
            current = words.get(word, 0)
            words[word] = (current & ~(0xFF << shift)) | (byte << shift)
    return {word: value for word, value in sorted(words.items()) if value}


def table_contents(module):
    """Initial table entries (function index or -1) per table."""
    tables = []
    for table in module.table_types():
        tables.append([-1] * table.limits.min)
    for number, segment in enumerate(module.elements):
        if segment.mode != "active":
            continue
        entries = tables[segment.table]
        start = evaluate_const(module, segment.offset, "i32", "element") & 0xFFFFFFFF
        if start + len(segment.funcs) > len(entries):
            raise ValidationError(
                f"element segment {number} does not fit in table {segment.table}",
                section="element",
            )
        for position, func_index in enumerate(segment.funcs):
            if module.is_import(func_index):
                raise UnsupportedFeature(
                    "host-functions",
                    f"imported function {module.function_name(func_index)} in a table",
                )
            entries[start + position] = func_index
    return tables


# -- generated entry points -------------------------------------------------


def _entry_wrapper(namespace, module, func_index, from_args):
    buf = CommandBuffer(namespace)
    buf.call("rt/reset")
    buf.emit(
        f"data modify storage {buf.fn('rt')} stack append value "
        f'{{k:"{buf.fn("rt/finish")}"}}'
    )
    if from_args:
        for index, value_type in enumerate(module.func_type(func_index).params):
            buf.copy_value(local(index), arg(index), is_wide(value_type))
    buf.jump(block_path(func_index, 0))
    return buf.lines


def _dispatcher(namespace, module, table_entries, table, type_index):
    buf = CommandBuffer(namespace)
    mismatch = buf.tail("rt/trap/indirect_call_type_mismatch")
    cases = []
    for func_index in sorted({f for f in table_entries if f >= 0}):
        matching = module.types.index(module.func_type(func_index)) == type_index
        command = buf.tail(block_path(func_index, 0)) if matching else mismatch
        if cases and cases[-1][1] == func_index - 1 and cases[-1][2] == command:
            cases[-1][1] = func_index
        else:
            cases.append([func_index, func_index, command])
    cases = [(lo, hi, command) for lo, hi, command in cases if command != mismatch]
    return dispatch(namespace, dispatcher_path(table, type_index), "%cf", cases, mismatch)


def _global_init(buf, module):
    imported = len(module.global_types()) - len(module.globals)
    for number, glob in enumerate(module.globals):
        index = imported + number
        value = evaluate_const(module, glob.init, glob.type.type, "global")
        reg = f"%g{index}"
        if is_wide(glob.type.type):
            lo, hi = split64(value)
            buf.set(reg, lo)
            buf.set(reg + "h", hi)
        else:
            buf.set(reg, wrap32(value))


def _init_function(namespace, module, constants, layout, words, tables, has_start):
    buf = CommandBuffer(namespace)
    rt = buf.fn("rt")
    buf.emit(f"scoreboard objectives add {OBJECTIVE} dummy")
    for value in sorted(constants):
        buf.set(f"%c{value}", value)
    buf.call("rt/reset")
    buf.emit(f"data modify storage {rt} m set value {{p:0,i:0}}")
    buf.emit(f"data modify storage {rt} ci set value {{i:0}}")
    buf.emit(f'data modify storage {rt} turtle set value {{x:0,y:0,z:0,block:"minecraft:air"}}')
    buf.emit(f"data modify storage {buf.fn('io')} out set value []")
    buf.emit(f"data modify storage {buf.fn('io')} chars set value []")
    buf.emit(f"data modify storage {buf.fn('memory')} pages set value []")
    if layout is None:
        for reg in ("%memsize", "%membytes", "%memmax"):
            buf.set(reg, 0)
    else:
        min_pages, max_pages = layout
        zeros = ",".join(["0"] * WORDS_PER_PAGE)
        buf.emit(f"data modify storage {rt} zero_page set value [I;{zeros}]")
        buf.set("%memmax", max_pages)
        buf.set("%mg", min_pages)
        buf.when(matches("%mg", "1.."), f"function {buf.fn('rt/mem/grow_loop')}")
        buf.set("%memsize", min_pages)
        buf.set("%membytes", min_pages * PAGE_SIZE)
        for word, value in words.items():
            page, index = divmod(word, WORDS_PER_PAGE)
            buf.emit(
                f"data modify storage {buf.fn('memory')} pages[{page}][{index}] "
                f"set value {wrap32(value)}"
            )
    _global_init(buf, module)
    for index, entries in enumerate(tables):
        buf.emit(
            f"data modify storage {buf.fn('table')} t{index} "
            f"set value [I;{','.join(str(e) for e in entries)}]"
        )
    if has_start:
        buf.call("rt/start")
    return buf.lines


# -- driver -----------------------------------------------------------------


def _compile_functions(module, options, hosts):
    indices = list(range(module.num_imported_funcs, module.num_funcs))
    if options.jobs > 1 and len(indices) > 1:
        with ThreadPoolExecutor(max_workers=options.jobs) as pool:
            return list(pool.map(lambda i: emit_function(module, i, options, hosts), indices))
    return [emit_function(module, i, options, hosts) for i in indices]


def _exports(module, namespace):
    exports = {}
    used = set()
    for exp in module.exports:
        if exp.kind != "func":
            continue
        if module.is_import(exp.index):
            raise UnsupportedFeature("host-functions", f"export of imported function {exp.name}")
        base = sanitize_export_name(exp.name)
        sanitized = base
        counter = 1
        while sanitized in used:
            counter += 1
            sanitized = f"{base}_{counter}"
        used.add(sanitized)
        func_type = module.func_type(exp.index)
        exports[exp.name] = {
            "function": f"{namespace}:export/{sanitized}",
            "index": exp.index,
            "params": list(func_type.params),
            "results": list(func_type.results),
        }
    return exports


def compile_module(module, options=None, hosts=None, validate=True):
    """Compile a decoded module into an :class:`AssembledModule`.

    ``hosts`` is the host-function registry used to resolve imports (the
    built-in primitives by default).
    """
    options = options or CompileOptions()
    namespace = options.namespace
    if not NAMESPACE_PATTERN.match(namespace):
        raise EmitError(f"invalid namespace {namespace!r}")
    if validate:
        validate_module(module)
    module = lower_floats(module)

    bound = resolve_imports(module, hosts)
    layout = memory_layout(module)
    words = data_image(module, layout[0]) if layout else {}
    tables = table_contents(module)

    outputs = _compile_functions(module, options, bound)
    constants = set()
    dispatchers = set()
    functions = {}
    for output in outputs:
        constants |= output.constants
        dispatchers |= output.dispatchers
        for func in output.functions:
            functions[func.name] = func
    logger.debug(
        "emitted %d block functions for %d defined functions",
        len(functions),
        len(outputs),
    )

    for path, lines in build_runtime(namespace, constants, options.budget, tables).items():
        functions[f"{namespace}:{path}"] = CommandFunction(f"{namespace}:{path}", lines)

    for table, type_index in sorted(dispatchers):
        lines, extra = _dispatcher(namespace, module, tables[table], table, type_index)
        extra[dispatcher_path(table, type_index)] = lines
        for path, body in extra.items():
            functions[f"{namespace}:{path}"] = CommandFunction(f"{namespace}:{path}", body)

    exports = _exports(module, namespace)
    for name, info in exports.items():
        functions[info["function"]] = CommandFunction(
            info["function"], _entry_wrapper(namespace, module, info["index"], True)
        )
    if module.start is not None:
        if module.is_import(module.start):
            raise UnsupportedFeature("host-functions", "imported start function")
        functions[f"{namespace}:rt/start"] = CommandFunction(
            f"{namespace}:rt/start", _entry_wrapper(namespace, module, module.start, False)
        )

    init_name = f"{namespace}:init"
    functions[init_name] = CommandFunction(
        init_name,
        _init_function(namespace, module, constants, layout, words, tables, module.start is not None),
    )

    for name in functions:
        validate_function_name(name)
    functions = dict(sorted(functions.items()))

    tick_name = f"{namespace}:rt/tick"
    tick = [tick_name] if tick_name in functions else []
    manifest = {
        "format": MANIFEST_FORMAT,
        "namespace": namespace,
        "objective": OBJECTIVE,
        "init": init_name,
        "tick": tick_name if tick else None,
        "start": f"{namespace}:rt/start" if module.start is not None else None,
        "exports": exports,
        "memory": None if layout is None else {"pages": layout[0], "max_pages": layout[1]},
        "traps": dict(TRAP_CODES),
        "options": options.to_dict(),
        "functions": len(functions),
        "commands": sum(len(f) for f in functions.values()),
        "digest": functions_digest(functions),
    }
    logger.info(
        "assembled %d command functions (%d commands) in namespace %s",
        manifest["functions"],
        manifest["commands"],
        namespace,
    )
    return AssembledModule(namespace, functions, manifest, [init_name], tick, outputs)


def compile_wasm(data, options=None, hosts=None):
    """Decode, validate and compile a binary module."""
    module = decode_module(data)
    return compile_module(module, options, hosts)


__all__ = [
    "AssembledModule",
    "CompileOptions",
    "compile_module",
    "compile_wasm",
    "data_image",
    "functions_digest",
    "memory_layout",
    "sanitize_export_name",
    "table_contents",
    "validate_function_name",
]
