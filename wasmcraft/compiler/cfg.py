"""Reconstruct an explicit control-flow graph from structured WebAssembly code.

Blocks live in an arena (``ControlFlowGraph.blocks``) and refer to each other
by index, so loop back edges are plain integers rather than object cycles.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from ..constants import MAX_BLOCKS_PER_FUNCTION
from .errors import EmitError, ResourceLimitExceeded
from .module import FuncType, Instr


@dataclass(frozen=True)
class Fallthrough:
    target: int


@dataclass(frozen=True)
class Jump:
    target: int
    back_edge: bool = False


@dataclass(frozen=True)
class BranchIf:
    cond: int
    taken: int
    not_taken: int


@dataclass(frozen=True)
class BranchTable:
    index: int
    targets: tuple
    default: int


@dataclass(frozen=True)
class Return:
    base: int


@dataclass(frozen=True)
class Unreachable:
    kind: str = "unreachable"


@dataclass(frozen=True)
class Call:
    func: int
    cont: int
    base: int
    live: tuple
    params: tuple
    results: tuple


@dataclass(frozen=True)
class CallIndirect:
    type_index: int
    table: int
    cont: int
    base: int
    live: tuple
    params: tuple
    results: tuple


@dataclass
class BasicBlock:
    index: int
    kind: str
    height: int
    instrs: list = field(default_factory=list)
    terminator: object = None

    @property
    def loop_header(self):
        return self.kind == "loop"


def successors(terminator):
    if isinstance(terminator, (Fallthrough, Jump)):
        return [terminator.target]
    if isinstance(terminator, BranchIf):
        return [terminator.taken, terminator.not_taken]
    if isinstance(terminator, BranchTable):
        return list(dict.fromkeys([*terminator.targets, terminator.default]))
    if isinstance(terminator, (Call, CallIndirect)):
        return [terminator.cont]
    return []


@dataclass
class ControlFlowGraph:
    func_index: int
    func_type: FuncType
    blocks: list

    entry = 0

    def __len__(self):
        return len(self.blocks)

    def successors(self, index):
        return successors(self.blocks[index].terminator)

    def reachable(self):
        seen = {self.entry}
        queue = deque([self.entry])
        while queue:
            index = queue.popleft()
            for succ in self.successors(index):
                if succ not in seen:
                    seen.add(succ)
                    queue.append(succ)
        return seen

    def back_edges(self):
        return [
            (block.index, block.terminator.target)
            for block in self.blocks
            if isinstance(block.terminator, Jump) and block.terminator.back_edge
        ]

    def edges(self):
        return [(block.index, succ) for block in self.blocks for succ in self.successors(block.index)]


@dataclass
class _Context:
    kind: str
    block_type: FuncType
    base: int
    target: int | None = None
    else_block: int | None = None

    @property
    def label_types(self):
        if self.kind == "loop":
            return self.block_type.params
        return self.block_type.results


def _else_map(body):
    """Map each ``if`` position to whether it has an ``else`` arm."""
    open_blocks = []
    has_else = {}
    for position, instr in enumerate(body):
        if instr.op in ("block", "loop", "if"):
            open_blocks.append(position)
            if instr.op == "if":
                has_else[position] = False
        elif instr.op == "else":
            has_else[open_blocks[-1]] = True
        elif instr.op == "end" and open_blocks:
            open_blocks.pop()
    return has_else


def _known(types):
    return tuple(t or "i32" for t in types)


class CFGBuilder:
    """Walk one function body and build its :class:`ControlFlowGraph`."""

    def __init__(self, module, func_index):
        self.module = module
        self.func_index = func_index
        self.func_type = module.func_type(func_index)
        self.blocks = []
        self.ctxs = []
        self.cur = None

    def new_block(self, kind, height):
        if len(self.blocks) >= MAX_BLOCKS_PER_FUNCTION:
            raise ResourceLimitExceeded(
                f"basic blocks in function {self.func_index}",
                len(self.blocks) + 1,
                MAX_BLOCKS_PER_FUNCTION,
            )
        block = BasicBlock(len(self.blocks), kind, height)
        self.blocks.append(block)
        return block.index

    def terminate(self, terminator):
        block = self.blocks[self.cur]
        if block.terminator is not None:
            raise EmitError(f"block {self.cur} terminated twice")
        block.terminator = terminator

    def fresh_dead(self, height):
        self.cur = self.new_block("dead", max(height, 0))

    def merge_of(self, ctx):
        if ctx.target is None:
            ctx.target = self.new_block("merge", ctx.base + len(ctx.block_type.results))
        return ctx.target

    def resolve(self, depth, height):
        """Resolve a branch of ``depth`` taken at stack ``height``.

        Returns ``(move, terminator)`` where ``move`` relocates the label
        values (or is None) and ``terminator`` ends the branching path.
        """
        ctx = self.ctxs[-1 - depth]
        if ctx.kind == "function":
            return None, Return(height - len(self.func_type.results))
        types = ctx.label_types
        src = height - len(types)
        move = None
        if types and src != ctx.base:
            move = Instr("stack.move", (src, ctx.base, tuple(types)))
        if ctx.kind == "loop":
            return move, Jump(ctx.target, back_edge=True)
        return move, Jump(self.merge_of(ctx))

    def edge(self, depth, height):
        """Target block for a conditional edge, adding an edge block if needed."""
        move, terminator = self.resolve(depth, height)
        if move is None and isinstance(terminator, Jump) and not terminator.back_edge:
            return terminator.target
        index = self.new_block("edge", height)
        block = self.blocks[index]
        if move is not None:
            block.instrs.append(move)
        block.terminator = terminator
        return index

    def build(self):
        body = self.module.function(self.func_index).body
        has_else = _else_map(body)
        self.cur = self.new_block("entry", 0)
        self.ctxs.append(_Context("function", FuncType((), self.func_type.results), 0))

        for position, instr in enumerate(body):
            op = instr.op
            h = instr.height if instr.height is not None else 0

            if op == "nop":
                continue
            if op == "block":
                bt = instr.block_type
                self.ctxs.append(_Context("block", bt, h - len(bt.params)))
            elif op == "loop":
                bt = instr.block_type
                header = self.new_block("loop", h)
                self.terminate(Fallthrough(header))
                self.cur = header
                self.ctxs.append(_Context("loop", bt, h - len(bt.params), target=header))
            elif op == "if":
                bt = instr.block_type
                base = h - 1 - len(bt.params)
                then_block = self.new_block("then", h - 1)
                else_block = self.new_block("else", h - 1) if has_else[position] else None
                merge = self.new_block("merge", base + len(bt.results))
                self.terminate(
                    BranchIf(h - 1, then_block, else_block if else_block is not None else merge)
                )
                self.ctxs.append(_Context("if", bt, base, target=merge, else_block=else_block))
                self.cur = then_block
            elif op == "else":
                ctx = self.ctxs[-1]
                self.terminate(Fallthrough(ctx.target))
                ctx.kind = "else"
                self.cur = ctx.else_block
            elif op == "end":
                ctx = self.ctxs.pop()
                if ctx.kind == "function":
                    self.terminate(Return(0))
                elif ctx.kind in ("block", "if", "else") and ctx.target is not None:
                    self.terminate(Fallthrough(ctx.target))
                    self.cur = ctx.target
            elif op == "br":
                move, terminator = self.resolve(instr.imm, h)
                if move is not None:
                    self.blocks[self.cur].instrs.append(move)
                self.terminate(terminator)
                self.fresh_dead(h)
            elif op == "br_if":
                taken = self.edge(instr.imm, h - 1)
                cont = self.new_block("next", h - 1)
                self.terminate(BranchIf(h - 1, taken, cont))
                self.cur = cont
            elif op == "br_table":
                labels, default = instr.imm
                cache = {}

                def target_for(depth):
                    if depth not in cache:
                        cache[depth] = self.edge(depth, h - 1)
                    return cache[depth]

                targets = tuple(target_for(depth) for depth in labels)
                self.terminate(BranchTable(h - 1, targets, target_for(default)))
                self.fresh_dead(h - 1)
            elif op == "return":
                self.terminate(Return(h - len(self.func_type.results)))
                self.fresh_dead(h)
            elif op == "unreachable":
                self.terminate(Unreachable(instr.imm or "unreachable"))
                self.fresh_dead(h)
            elif op == "call" and not self.module.is_import(instr.imm):
                callee = self.module.func_type(instr.imm)
                base = h - len(callee.params)
                live = _known((instr.stack or ())[:base])
                cont = self.new_block("cont", base + len(callee.results))
                self.terminate(Call(instr.imm, cont, base, live, callee.params, callee.results))
                self.blocks[cont].instrs.append(Instr("call.resume", (live, callee.results, base)))
                self.cur = cont
            elif op == "call_indirect":
                type_index, table = instr.imm
                callee = self.module.types[type_index]
                base = h - 1 - len(callee.params)
                live = _known((instr.stack or ())[:base])
                cont = self.new_block("cont", base + len(callee.results))
                self.terminate(
                    CallIndirect(type_index, table, cont, base, live, callee.params, callee.results)
                )
                self.blocks[cont].instrs.append(Instr("call.resume", (live, callee.results, base)))
                self.cur = cont
            else:
                self.blocks[self.cur].instrs.append(instr)

        return ControlFlowGraph(self.func_index, self.func_type, self.blocks)


def build_cfg(module, func_index):
    """Build the control-flow graph of a defined function."""
    return CFGBuilder(module, func_index).build()


__all__ = [
    "BasicBlock",
    "BranchIf",
    "BranchTable",
    "CFGBuilder",
    "Call",
    "CallIndirect",
    "ControlFlowGraph",
    "Fallthrough",
    "Jump",
    "Return",
    "Unreachable",
    "build_cfg",
    "successors",
]
