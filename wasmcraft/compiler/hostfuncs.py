"""Host primitives that imported functions may bind to.

A host function is a short command template expanded inline at each call
site.  Templates name their operands with placeholders that are substituted
when the call is lowered:

``<arg0>`` ... ``<argN>``
    registers holding the arguments (``<arg0h>`` for the high word of a
    64-bit argument)
``<result>`` / ``<resulth>``
    register receiving the result
``<ns>``
    the datapack namespace
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass

from ..constants import OBJECTIVE, VALUE_TYPES
from .errors import UnresolvedImport
from .module import FuncType

_VALUE_TYPE_NAMES = frozenset(VALUE_TYPES.values())


@dataclass
class HostFunction:
    """A host-provided primitive an import can resolve to."""

    module: str
    name: str
    params: tuple
    results: tuple
    commands: tuple
    description: str = ""

    def __post_init__(self):
        self.module = (self.module or "").strip()
        self.name = (self.name or "").strip()
        if not self.module or not self.name:
            raise ValueError("host function requires a module and a name")
        self.params = tuple(p.strip() for p in (self.params or ()) if p.strip())
        self.results = tuple(r.strip() for r in (self.results or ()) if r.strip())
        for value_type in self.params + self.results:
            if value_type not in _VALUE_TYPE_NAMES:
                raise ValueError(
                    f"host function {self.key} has unknown value type: {value_type}"
                )
        if len(self.results) > 1:
            raise ValueError(f"host function {self.key} returns more than one value")
        self.commands = tuple(c for c in (self.commands or ()) if c.strip())

    @property
    def key(self):
        return f"{self.module}.{self.name}"

    @property
    def func_type(self):
        return FuncType(self.params, self.results)

    @property
    def terminal(self):
        """Whether the template ends the current command function."""
        return bool(self.commands) and self.commands[-1].startswith("return ")

    def expand(self, namespace, args, result=None):
        """Render the template for argument registers ``args``."""
        lines = []
        for template in self.commands:
            line = template.replace("<ns>", namespace)
            if result is not None:
                line = line.replace("<resulth>", result + "h").replace("<result>", result)
            for index in reversed(range(len(args))):
                line = line.replace(f"<arg{index}h>", args[index] + "h")
                line = line.replace(f"<arg{index}>", args[index])
            lines.append(line)
        return lines

    def to_dict(self):
        return {
            "module": self.module,
            "name": self.name,
            "params": list(self.params),
            "results": list(self.results),
            "commands": list(self.commands),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise TypeError("host function must be built from a mapping")
        return cls(
            data.get("module"),
            data.get("name"),
            data.get("params") or [],
            data.get("results") or [],
            data.get("commands") or [],
            data.get("description") or "",
        )


def _score(reg):
    return f"{reg} {OBJECTIVE}"


def _append_score(storage_path, reg):
    return [
        f"data modify storage <ns>:{storage_path} append value 0",
        f"execute store result storage <ns>:{storage_path}[-1] int 1 "
        f"run scoreboard players get {_score(reg)}",
    ]


def _append_words(*fields):
    """Append a compound of ``(field, register)`` words to <ns>:io out."""
    initial = ",".join(f"{name}:0" for name, _ in fields)
    lines = [f"data modify storage <ns>:io out append value {{{initial}}}"]
    for name, reg in fields:
        lines.append(
            f"execute store result storage <ns>:io out[-1].{name} int 1 "
            f"run scoreboard players get {_score(reg)}"
        )
    return lines


def _turtle_axis(axis):
    return HostFunction(
        "env",
        f"turtle_{axis}",
        ["i32"],
        [],
        [
            f"execute store result storage <ns>:rt turtle.{axis} int 1 "
            f"run scoreboard players get {_score('<arg0>')}"
        ],
        f"set the turtle {axis} coordinate",
    )


def _turtle_offsets(*regs):
    """Load the region offsets ``%tdx %tdy %tdz`` from ``regs`` (zero when absent)."""
    lines = []
    for axis, reg in zip("xyz", regs or ("0", "0", "0")):
        if reg == "0":
            lines.append(f"scoreboard players set %td{axis} {OBJECTIVE} 0")
        else:
            lines.append(f"scoreboard players operation %td{axis} {OBJECTIVE} = {_score(reg)}")
    return lines


def _turtle_region(name, path, description, regs=()):
    params = ["i32"] * len(regs)
    return HostFunction(
        "env",
        name,
        params,
        [],
        [*_turtle_offsets(*regs), f"function <ns>:rt/turtle/{path}"],
        description,
    )


_OUT_OF_BOUNDS = "return run function <ns>:rt/trap/out_of_bounds_memory_access"


BUILTIN_HOST_FUNCTIONS = [
    HostFunction(
        "env",
        "print",
        ["i32"],
        [],
        [
            'tellraw @a {"score":{"name":"<arg0>","objective":"%s"}}' % OBJECTIVE,
            *_append_words(("lo", "<arg0>")),
        ],
        "show an integer in chat and record it in <ns>:io out",
    ),
    HostFunction(
        "env",
        "print_i64",
        ["i64"],
        [],
        [
            'tellraw @a ["",{"score":{"name":"<arg0h>","objective":"%s"}},":",'
            '{"score":{"name":"<arg0>","objective":"%s"}}]' % (OBJECTIVE, OBJECTIVE),
            *_append_words(("lo", "<arg0>"), ("hi", "<arg0h>")),
        ],
        "show the two words of a 64-bit integer and record it in <ns>:io out",
    ),
    HostFunction(
        "env",
        "putc",
        ["i32"],
        [],
        _append_score("io chars", "<arg0>"),
        "record a character code in <ns>:io chars",
    ),
    HostFunction(
        "env",
        "rand",
        [],
        ["i32"],
        [f"execute store result score {_score('<result>')} run random value 0..2147483646"],
        "a non-negative random integer",
    ),
    _turtle_axis("x"),
    _turtle_axis("y"),
    _turtle_axis("z"),
    HostFunction(
        "env",
        "turtle_set_block",
        ["i32"],
        [],
        [
            f"scoreboard players operation %tb {OBJECTIVE} = {_score('<arg0>')}",
            "function <ns>:rt/turtle/set",
        ],
        "place a palette block at the turtle position",
    ),
    HostFunction(
        "env",
        "turtle_get_block",
        [],
        ["i32"],
        [
            "function <ns>:rt/turtle/get",
            f"scoreboard players operation {_score('<result>')} = %tb {OBJECTIVE}",
        ],
        "palette index of the block at the turtle position, or -1",
    ),
    HostFunction(
        "env",
        "turtle_fill",
        ["i32", "i32", "i32", "i32"],
        [],
        [
            f"scoreboard players operation %tb {OBJECTIVE} = {_score('<arg0>')}",
            *_turtle_offsets("<arg1>", "<arg2>", "<arg3>"),
            "function <ns>:rt/turtle/fill",
        ],
        "fill the box from the turtle to the turtle plus the offsets with a palette block",
    ),
    _turtle_region("turtle_copy", "copy", "copy the block at the turtle into the clipboard"),
    _turtle_region("turtle_paste", "paste", "paste the clipboard block at the turtle"),
    _turtle_region(
        "turtle_copy_region",
        "copy",
        "copy the box from the turtle to the turtle plus the offsets into the clipboard",
        ("<arg0>", "<arg1>", "<arg2>"),
    ),
    _turtle_region(
        "turtle_paste_region_masked",
        "paste_masked",
        "paste the non-air blocks of a clipboard box at the lower corner of the turtle box",
        ("<arg0>", "<arg1>", "<arg2>"),
    ),
    HostFunction(
        "env",
        "memset",
        ["i32", "i32", "i32"],
        ["i32"],
        [
            f"scoreboard players operation %ma {OBJECTIVE} = {_score('<arg0>')}",
            f"scoreboard players operation %m8 {OBJECTIVE} = {_score('<arg1>')}",
            f"scoreboard players operation %mf {OBJECTIVE} = {_score('<arg2>')}",
            f"scoreboard players operation %mo {OBJECTIVE} = %membytes {OBJECTIVE}",
            f"scoreboard players operation %mo {OBJECTIVE} -= %mf {OBJECTIVE}",
            f"execute if score %ma {OBJECTIVE} matches ..-1 run {_OUT_OF_BOUNDS}",
            f"execute if score %mf {OBJECTIVE} matches ..-1 run {_OUT_OF_BOUNDS}",
            f"execute if score %ma {OBJECTIVE} > %mo {OBJECTIVE} run {_OUT_OF_BOUNDS}",
            "function <ns>:rt/mem/fill",
            f"scoreboard players operation {_score('<result>')} = {_score('<arg0>')}",
        ],
        "set a range of memory bytes to a value and return the start address",
    ),
    HostFunction(
        "wasi_snapshot_preview1",
        "proc_exit",
        ["i32"],
        [],
        [
            f"scoreboard players operation %exit {OBJECTIVE} = {_score('<arg0>')}",
            "return run function <ns>:rt/exit",
        ],
        "stop the program with an exit code",
    ),
]


def builtin_host_registry():
    """A fresh mapping of the built-in primitives, keyed by ``module.name``."""
    return {host.key: host for host in BUILTIN_HOST_FUNCTIONS}


HOST_REGISTRY = builtin_host_registry()


HOST_SCHEMA_PATTERN = re.compile(
    r"^\s*(?P<module>[A-Za-z_][\w-]*)\.(?P<name>[A-Za-z_][\w-]*)\s*"
    r"\((?P<params>[^)]*)\)\s*->\s*\((?P<results>[^)]*)\)\s*"
    r"(?:\|\s*(?P<commands>.+))?$"
)


def parse_host_schema(schema):
    """Parse ``module.name(params) -> (results) | cmd; cmd`` lines."""

    if not schema:
        return []

    hosts = []
    for line in schema.splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#"):
            continue
        match = HOST_SCHEMA_PATTERN.match(entry)
        if not match:
            raise ValueError(f"Invalid host function declaration: {entry}")
        params = [p.strip() for p in match.group("params").split(",") if p.strip()]
        results = [r.strip() for r in match.group("results").split(",") if r.strip()]
        commands = []
        if match.group("commands"):
            commands = [c.strip() for c in match.group("commands").split(";") if c.strip()]
        hosts.append(
            HostFunction(match.group("module"), match.group("name"), params, results, commands)
        )
    return hosts


def _normalize_host_functions(spec):
    if spec is None:
        return []
    if isinstance(spec, HostFunction):
        return [spec]
    if isinstance(spec, str):
        trimmed = spec.strip()
        if not trimmed:
            return []
        if trimmed[0] in "[{":
            return _normalize_host_functions(json.loads(trimmed))
        return parse_host_schema(trimmed)
    if isinstance(spec, dict):
        if "hosts" in spec and isinstance(spec["hosts"], list):
            return _normalize_host_functions(spec["hosts"])
        return [HostFunction.from_dict(spec)]
    if isinstance(spec, (list, tuple)):
        hosts = []
        for item in spec:
            hosts.extend(_normalize_host_functions(item))
        return hosts
    raise TypeError(f"Unsupported host function spec type: {type(spec)!r}")


def register_host_functions(spec, *, replace=False):
    """Register one or more host functions in the global registry."""

    for host in _normalize_host_functions(spec):
        if host.key in HOST_REGISTRY and not replace:
            raise ValueError(f"Duplicate host function {host.key}")
        HOST_REGISTRY[host.key] = host


def reset_host_registry():
    """Restore the registry to the built-in primitives."""

    HOST_REGISTRY.clear()
    HOST_REGISTRY.update(builtin_host_registry())


def get_registered_host_functions():
    return dict(HOST_REGISTRY)


def resolve_imports(module, registry=None):
    """Bind every imported function of ``module`` to a host primitive.

    ``registry`` defaults to the built-in primitives only; pass
    :func:`get_registered_host_functions` to include registered extras.
    Returns a mapping from function index to :class:`HostFunction`.
    """
    registry = builtin_host_registry() if registry is None else registry
    bound = {}
    for index, imp in enumerate(module.func_imports):
        expected = module.types[imp.desc]
        host = registry.get(f"{imp.module}.{imp.name}")
        if host is None:
            raise UnresolvedImport(imp.module, imp.name, expected, "no such host function")
        if host.func_type != expected:
            raise UnresolvedImport(
                imp.module,
                imp.name,
                expected,
                f"host function has signature {host.func_type}",
            )
        bound[index] = host
    return bound


__all__ = [
    "BUILTIN_HOST_FUNCTIONS",
    "HOST_REGISTRY",
    "HostFunction",
    "builtin_host_registry",
    "get_registered_host_functions",
    "parse_host_schema",
    "register_host_functions",
    "reset_host_registry",
    "resolve_imports",
]
