"""Emit one command function per basic block.

Every control transfer is a tail call (``return run function``), so a chain
of blocks never grows the command-function call stack.  WebAssembly calls
push an explicit frame onto ``<ns>:rt stack``: the frame names the
continuation block in its ``k`` field and keeps the caller's locals and live
operand slots; returning runs ``rt/return`` with the frame as macro
arguments, which tail-calls the continuation.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from ..constants import DISPATCH_LINEAR_LIMIT
from .cfg import (
    BranchIf,
    BranchTable,
    Call,
    CallIndirect,
    Fallthrough,
    Jump,
    Return,
    Unreachable,
    build_cfg,
)
from .errors import EmitError
from .lir import CommandBuffer, local, matches, result, score, slot
from .lowering import FunctionLowerer, frame_entries, save_registers
from .module import is_wide


@dataclass
class CommandFunction:
    """A named list of commands; ``name`` is the full ``ns:path`` id."""

    name: str
    commands: list = field(default_factory=list)

    @property
    def namespace(self):
        return self.name.split(":", 1)[0]

    @property
    def path(self):
        return self.name.split(":", 1)[1]

    def __len__(self):
        return len(self.commands)

    def text(self):
        return "\n".join(self.commands) + "\n"


@dataclass
class FunctionOutput:
    """Everything emitted for one defined function."""

    func_index: int
    cfg: object
    functions: list
    constants: set
    dispatchers: set


def block_path(func_index, block_index):
    return f"f{func_index}/b{block_index}"


def dispatcher_path(table, type_index):
    return f"rt/icall/t{table}_{type_index}"


def canonical_type(module, type_index):
    """Smallest type index structurally equal to ``type_index``."""
    return module.types.index(module.types[type_index])


def format_range(lo, hi):
    return str(lo) if lo == hi else f"{lo}..{hi}"


def dispatch(namespace, path, register, cases, default, limit=DISPATCH_LINEAR_LIMIT):
    """Guarded commands selecting one of ``cases`` by the value of ``register``.

    ``cases`` are sorted, disjoint ``(lo, hi, command)`` ranges; values
    outside every range run ``default``.  Beyond ``limit`` cases the ranges
    are split into nested functions ``<path>/n<k>`` so that any value is
    resolved in a logarithmic number of tests.  Returns the command lines for
    ``path`` and a mapping of the nested function paths to their lines.
    """
    extra = {}
    lines = []
    if len(cases) <= limit:
        for lo, hi, command in cases:
            lines.append(f"execute if {matches(register, format_range(lo, hi))} run {command}")
    else:
        size = -(-len(cases) // limit)
        for number, start in enumerate(range(0, len(cases), size)):
            chunk = cases[start:start + size]
            sub = f"{path}/n{number}"
            sub_lines, sub_extra = dispatch(namespace, sub, register, chunk, default, limit)
            extra[sub] = sub_lines
            extra.update(sub_extra)
            lines.append(
                f"execute if {matches(register, format_range(chunk[0][0], chunk[-1][1]))} "
                f"run return run function {namespace}:{sub}"
            )
    lines.append(default)
    return lines, extra


def table_runs(targets, default):
    """Collapse consecutive ``br_table`` entries with the same target."""
    runs = []
    for index, target in enumerate(targets):
        if target == default:
            continue
        if runs and runs[-1][1] == index - 1 and runs[-1][2] == target:
            runs[-1][1] = index
        else:
            runs.append([index, index, target])
    return runs


class FunctionEmitter:
    """Turns the control-flow graph of one function into command functions."""

    def __init__(self, module, func_index, options, hosts=None):
        self.module = module
        self.func_index = func_index
        self.options = options
        self.namespace = options.namespace
        self.locals = module.function_locals(func_index)
        self.params = module.func_type(func_index).params
        self.constants = set()
        self.dispatchers = set()
        self.lowerer = FunctionLowerer(module, func_index, hosts)

    def path(self, block_index):
        return block_path(self.func_index, block_index)

    def buffer(self):
        return CommandBuffer(self.namespace, self.constants)

    def emit(self):
        cfg = build_cfg(self.module, self.func_index)
        reachable = cfg.reachable()
        functions = []
        for block in cfg.blocks:
            buf = self.buffer()
            if self.options.comments:
                buf.emit(f"# {self.module.function_name(self.func_index)} block {block.index} ({block.kind})")
            extra = {}
            if block.index not in reachable:
                buf.trap("unreachable")
            else:
                if block.index == cfg.entry:
                    self.prologue(buf)
                self.lowerer.lower_block(buf, block)
                extra = self.terminate(buf, block)
            functions.append(CommandFunction(buf.fn(self.path(block.index)), buf.lines))
            for path, lines in extra.items():
                functions.append(CommandFunction(buf.fn(path), lines))
        return FunctionOutput(self.func_index, cfg, functions, self.constants, self.dispatchers)

    def prologue(self, buf):
        for index in range(len(self.params), len(self.locals)):
            buf.set(local(index), 0)
            if is_wide(self.locals[index]):
                buf.set(local(index, True), 0)

    # -- terminators ----------------------------------------------------

    def terminate(self, buf, block):
        term = block.terminator
        if term is None:
            raise EmitError(f"block {block.index} of f{self.func_index} has no terminator")
        if isinstance(term, Fallthrough):
            buf.jump(self.path(term.target))
        elif isinstance(term, Jump):
            if term.back_edge:
                self.budget_check(buf, self.path(term.target))
            buf.jump(self.path(term.target))
        elif isinstance(term, BranchIf):
            if term.taken == term.not_taken:
                buf.jump(self.path(term.taken))
            else:
                buf.when(matches(slot(term.cond), "0"), buf.tail(self.path(term.taken)), negate=True)
                buf.jump(self.path(term.not_taken))
        elif isinstance(term, BranchTable):
            cases = [
                (lo, hi, buf.tail(self.path(target)))
                for lo, hi, target in table_runs(term.targets, term.default)
            ]
            lines, extra = dispatch(
                self.namespace,
                self.path(block.index),
                slot(term.index),
                cases,
                buf.tail(self.path(term.default)),
            )
            buf.extend(lines)
            return extra
        elif isinstance(term, Return):
            self.emit_return(buf, term.base)
        elif isinstance(term, Unreachable):
            buf.trap(term.kind)
        elif isinstance(term, Call):
            self.push_frame(buf, term.cont, term.live)
            self.move_args(buf, term.base, term.params)
            entry = block_path(term.func, 0)
            self.budget_check(buf, entry)
            buf.jump(entry)
        elif isinstance(term, CallIndirect):
            self.emit_call_indirect(buf, term)
        else:  # pragma: no cover
            raise EmitError(f"unknown terminator {term!r}")
        return {}

    def budget_check(self, buf, target_path):
        """Defer ``target_path`` to the next tick once the budget is spent.

        The continuation is parked in ``<ns>:rt resume``.  ``rt/resume`` is the
        only function ever scheduled, and ``rt/reset`` clears it.
        """
        if self.options.budget is None:
            return
        buf.add("%budget", -1)
        spent = matches("%budget", "..-1")
        buf.when(
            spent,
            f"data modify storage {buf.fn('rt')} resume set value "
            f'{{k:"{buf.fn(target_path)}"}}',
        )
        buf.when(spent, f"return run schedule function {buf.fn('rt/resume')} 1t replace")

    def emit_return(self, buf, base):
        for index, value_type in enumerate(self.module.func_type(self.func_index).results):
            buf.copy_value(result(index), slot(base + index), is_wide(value_type))
        buf.add("%depth", -1)
        buf.emit(
            f"return run function {buf.fn('rt/return')} with storage {buf.fn('rt')} stack[-1]"
        )

    def push_frame(self, buf, cont, live):
        buf.add("%depth", 1)
        buf.trap(
            "call_stack_exhausted",
            f"if {matches('%depth', f'{self.options.max_depth + 1}..')}",
        )
        buf.emit(
            f"data modify storage {buf.fn('rt')} stack append value "
            f'{{k:"{buf.fn(self.path(cont))}"}}'
        )
        save_registers(buf, frame_entries(self.locals, live))

    def move_args(self, buf, base, params):
        for index, value_type in enumerate(params):
            buf.copy_value(local(index), slot(base + index), is_wide(value_type))

    def emit_call_indirect(self, buf, term):
        table_type = self.module.table_types()[term.table]
        size = table_type.limits.min
        index = slot(term.base + len(term.params))
        if size == 0:
            buf.trap("undefined_element")
            return
        buf.copy("%ci", index)
        buf.trap("undefined_element", f"if {matches('%ci', '..-1')}")
        buf.trap("undefined_element", f"if {matches('%ci', f'{size}..')}")
        buf.emit(
            f"execute store result storage {buf.fn('rt')} ci.i int 1 "
            f"run scoreboard players get {score('%ci')}"
        )
        buf.call_with(f"rt/table/t{term.table}", "rt", "ci")
        buf.trap("uninitialized_element", f"if {matches('%cf', '-1')}")
        self.push_frame(buf, term.cont, term.live)
        self.move_args(buf, term.base, term.params)
        type_index = canonical_type(self.module, term.type_index)
        self.dispatchers.add((term.table, type_index))
        target = dispatcher_path(term.table, type_index)
        self.budget_check(buf, target)
        buf.jump(target)


def emit_function(module, func_index, options, hosts=None):
    return FunctionEmitter(module, func_index, options, hosts).emit()


__all__ = [
    "CommandFunction",
    "FunctionEmitter",
    "FunctionOutput",
    "block_path",
    "canonical_type",
    "dispatch",
    "dispatcher_path",
    "emit_function",
    "format_range",
    "table_runs",
]
