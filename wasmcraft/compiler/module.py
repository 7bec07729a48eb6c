"""Typed descriptors for a decoded WebAssembly module."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..constants import WIDE_TYPES


@dataclass(frozen=True)
class FuncType:
    params: tuple = ()
    results: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "params", tuple(self.params))
        object.__setattr__(self, "results", tuple(self.results))

    def __str__(self):
        return f"({', '.join(self.params)}) -> ({', '.join(self.results)})"

    def to_dict(self):
        return {"params": list(self.params), "results": list(self.results)}


@dataclass(frozen=True)
class Limits:
    min: int
    max: int | None = None


@dataclass(frozen=True)
class TableType:
    elem: str
    limits: Limits


@dataclass(frozen=True)
class GlobalType:
    type: str
    mutable: bool = False


@dataclass
class Instr:
    """One decoded instruction.

    ``imm`` holds the immediates in decoded form (label depth, index,
    ``(align, offset)`` memarg, ``(labels, default)`` for ``br_table`` ...).
    The remaining fields are filled in by the validator and are not part of
    instruction identity.
    """

    op: str
    imm: object = None
    offset: int = field(default=0, compare=False)
    height: int | None = field(default=None, compare=False, repr=False)
    block_type: FuncType | None = field(default=None, compare=False, repr=False)
    value_type: str | None = field(default=None, compare=False, repr=False)
    stack: tuple | None = field(default=None, compare=False, repr=False)


@dataclass
class Import:
    module: str
    name: str
    kind: str
    desc: object


@dataclass
class Export:
    name: str
    kind: str
    index: int


@dataclass
class Global:
    type: GlobalType
    init: list


@dataclass
class ElemSegment:
    table: int
    offset: list | None
    funcs: list
    mode: str = "active"


@dataclass
class DataSegment:
    memory: int
    offset: list | None
    data: bytes
    mode: str = "active"


@dataclass
class Function:
    type_index: int
    locals: list = field(default_factory=list)
    body: list = field(default_factory=list)
    offset: int = field(default=0, compare=False)


@dataclass
class Module:
    types: list = field(default_factory=list)
    imports: list = field(default_factory=list)
    functions: list = field(default_factory=list)
    tables: list = field(default_factory=list)
    memories: list = field(default_factory=list)
    globals: list = field(default_factory=list)
    exports: list = field(default_factory=list)
    start: int | None = None
    elements: list = field(default_factory=list)
    data: list = field(default_factory=list)
    data_count: int | None = None
    customs: list = field(default_factory=list)
    names: dict = field(default_factory=dict)

    @property
    def func_imports(self):
        return [imp for imp in self.imports if imp.kind == "func"]

    @property
    def num_imported_funcs(self):
        return len(self.func_imports)

    @property
    def num_funcs(self):
        return self.num_imported_funcs + len(self.functions)

    def is_import(self, func_index):
        return func_index < self.num_imported_funcs

    def func_type(self, func_index):
        """Signature of a function in the combined import/definition index space."""
        imported = self.func_imports
        if func_index < len(imported):
            return self.types[imported[func_index].desc]
        return self.types[self.functions[func_index - len(imported)].type_index]

    def function(self, func_index):
        return self.functions[func_index - self.num_imported_funcs]

    def function_locals(self, func_index):
        """Parameter types followed by declared locals."""
        return list(self.func_type(func_index).params) + list(self.function(func_index).locals)

    def global_types(self):
        imported = [imp.desc for imp in self.imports if imp.kind == "global"]
        return imported + [g.type for g in self.globals]

    def table_types(self):
        imported = [imp.desc for imp in self.imports if imp.kind == "table"]
        return imported + list(self.tables)

    def memory_types(self):
        imported = [imp.desc for imp in self.imports if imp.kind == "memory"]
        return imported + list(self.memories)

    def export_map(self):
        return {exp.name: exp for exp in self.exports}

    def function_name(self, func_index):
        if func_index in self.names:
            return self.names[func_index]
        imported = self.func_imports
        if func_index < len(imported):
            return f"{imported[func_index].module}.{imported[func_index].name}"
        for exp in self.exports:
            if exp.kind == "func" and exp.index == func_index:
                return exp.name
        return f"f{func_index}"


def is_wide(value_type):
    """Whether a value occupies a low/high register pair."""
    return value_type in WIDE_TYPES


__all__ = [
    "DataSegment",
    "ElemSegment",
    "Export",
    "FuncType",
    "Function",
    "Global",
    "GlobalType",
    "Import",
    "Instr",
    "Limits",
    "Module",
    "TableType",
    "is_wide",
]
