"""Lower annotated WebAssembly instructions to scoreboard and storage commands.

The lowerer works on one basic block at a time.  Operand stack slots map to
registers ``%s<d>`` (see :mod:`.lir`); 64-bit values use a low/high register
pair; floating-point values are carried as raw IEEE-754 bit patterns.
Arithmetic that has no single-command equivalent calls a runtime helper from
:mod:`.intrinsics` through the fixed helper registers ``%x``/``%y`` (inputs)
and ``%q``/``%rem``/``%mv`` (outputs).

Helpers never trap: every trap check is an inline guarded tail call, so a
trap always ends the block function that detected it.
"""
from __future__ import annotations

from ..constants import INT32_MIN, MAX_PAGES, PAGE_SIZE
from .errors import EmitError
from .lir import (
    VirtualStack,
    compare,
    global_,
    local,
    matches,
    result,
    score,
    slot,
    split64,
    wrap32,
)
from .module import is_wide
from .opcodes import MEMORY_ACCESS

PSEUDO_OPS = frozenset({"stack.move", "call.resume"})

F32_CANONICAL_NAN = 0x7FC00000
F64_CANONICAL_NAN_HI = 0x7FF80000

_SIGNED_COMPARE = {"lt_s": "<", "gt_s": ">", "le_s": "<=", "ge_s": ">="}
_UNSIGNED_COMPARE = {"lt_u": "<", "gt_u": ">", "le_u": "<=", "ge_u": ">="}
_FLOAT_COMPARE = {
    "eq": ("if", "0"),
    "ne": ("unless", "0"),
    "lt": ("if", "-1"),
    "gt": ("if", "1"),
    "le": ("if", "-1..0"),
    "ge": ("if", "0..1"),
}
_BITWISE = ("and", "or", "xor")
_I64_HELPERS = {
    "shl": "rt/i64/shl",
    "shr_s": "rt/i64/shr_s",
    "shr_u": "rt/i64/shr_u",
    "rotl": "rt/i64/rotl",
    "rotr": "rt/i64/rotr",
}


def frame_field(prefix, index, hi=False):
    return f"{prefix}{index}{'h' if hi else ''}"


def save_registers(buf, entries):
    """Copy ``(register, field)`` pairs into the top call frame."""
    for reg, name in entries:
        buf.emit(
            f"execute store result storage {buf.fn('rt')} stack[-1].{name} int 1 "
            f"run scoreboard players get {score(reg)}"
        )


def restore_registers(buf, entries):
    for reg, name in entries:
        buf.emit(
            f"execute store result score {score(reg)} "
            f"run data get storage {buf.fn('rt')} stack[-1].{name}"
        )


def frame_entries(local_types, live_types):
    """Registers an activation keeps in its frame across a call."""
    entries = []
    for index, value_type in enumerate(local_types):
        entries.append((local(index), frame_field("l", index)))
        if is_wide(value_type):
            entries.append((local(index, True), frame_field("l", index, True)))
    for depth, value_type in enumerate(live_types):
        entries.append((slot(depth), frame_field("s", depth)))
        if is_wide(value_type):
            entries.append((slot(depth, True), frame_field("s", depth, True)))
    return entries


class FunctionLowerer:
    """Lowers the instructions of one defined function, block by block."""

    def __init__(self, module, func_index, hosts=None):
        self.module = module
        self.func_index = func_index
        self.locals = module.function_locals(func_index)
        self.globals = module.global_types()
        self.hosts = hosts or {}

    def lower_block(self, buf, block):
        """Append the commands for ``block.instrs`` to ``buf``.

        Returns the virtual stack as it stands before the terminator.
        """
        stack = VirtualStack(block.height)
        for instr in block.instrs:
            if instr.op not in PSEUDO_OPS and instr.height is not None:
                if instr.height != stack.height:
                    raise EmitError(
                        f"stack height mismatch in f{self.func_index} block {block.index}: "
                        f"{instr.op} expects {instr.height}, have {stack.height}"
                    )
            self.lower(buf, stack, instr)
        return stack

    def lower(self, buf, stack, instr):
        op = instr.op
        if op == "stack.move":
            self.stack_move(buf, stack, instr.imm)
        elif op == "call.resume":
            self.call_resume(buf, instr.imm)
        elif op == "nop":
            pass
        elif op == "drop":
            stack.pop()
        elif op == "select":
            self.select(buf, stack, instr.value_type or "i32")
        elif op in ("local.get", "local.set", "local.tee"):
            self.local_access(buf, stack, op, instr.imm)
        elif op in ("global.get", "global.set"):
            self.global_access(buf, stack, op, instr.imm)
        elif op in MEMORY_ACCESS:
            self.memory_access(buf, stack, op, instr.imm)
        elif op == "memory.size":
            target = stack.push("i32")
            buf.copy(slot(target), "%memsize")
        elif op == "memory.grow":
            value = stack.pop()
            buf.copy("%x", slot(value.slot))
            buf.call("rt/mem/grow")
            buf.copy(slot(stack.push("i32")), "%q")
        elif op == "call":
            self.host_call(buf, stack, instr.imm)
        elif op.endswith(".const"):
            self.constant(buf, stack, op, instr.imm)
        else:
            value_type, name = op.split(".", 1)
            handler = getattr(self, f"{value_type}_op", None)
            if handler is None:
                raise EmitError(f"no lowering for {op}")
            handler(buf, stack, name, op)

    # -- stack and variables -------------------------------------------

    def stack_move(self, buf, stack, imm):
        src, dst, types = imm
        for offset, value_type in enumerate(types):
            buf.copy_value(slot(dst + offset), slot(src + offset), is_wide(value_type))
        stack.truncate(dst)
        for value_type in types:
            stack.push(value_type)

    def call_resume(self, buf, imm):
        live, results, base = imm
        restore_registers(buf, frame_entries(self.locals, live))
        buf.emit(f"data remove storage {buf.fn('rt')} stack[-1]")
        for index, value_type in enumerate(results):
            buf.copy_value(slot(base + index), result(index), is_wide(value_type))

    def constant(self, buf, stack, op, imm):
        value_type = op.split(".")[0]
        if value_type in ("i32", "f32"):
            value = wrap32(imm)
            target = stack.push(value_type, value if value_type == "i32" else None)
            buf.set(slot(target), value)
        else:
            lo, hi = split64(imm)
            target = stack.push(value_type)
            buf.set(slot(target), lo)
            buf.set(slot(target, True), hi)

    def select(self, buf, stack, value_type):
        cond = stack.pop()
        second = stack.pop()
        first = stack.pop()
        a, b, c = slot(first.slot), slot(second.slot), slot(cond.slot)
        buf.when(matches(c, "0"), f"scoreboard players operation {score(a)} = {score(b)}")
        if is_wide(value_type):
            buf.when(
                matches(c, "0"),
                f"scoreboard players operation {score(a + 'h')} = {score(b + 'h')}",
            )
        stack.push(value_type)

    def local_access(self, buf, stack, op, index):
        value_type = self.locals[index]
        wide = is_wide(value_type)
        if op == "local.get":
            buf.copy_value(slot(stack.push(value_type)), local(index), wide)
        elif op == "local.set":
            buf.copy_value(local(index), slot(stack.pop().slot), wide)
        else:
            buf.copy_value(local(index), slot(stack.peek().slot), wide)

    def global_access(self, buf, stack, op, index):
        value_type = self.globals[index].type
        wide = is_wide(value_type)
        if op == "global.get":
            buf.copy_value(slot(stack.push(value_type)), global_(index), wide)
        else:
            buf.copy_value(global_(index), slot(stack.pop().slot), wide)

    def host_call(self, buf, stack, func_index):
        host = self.hosts.get(func_index)
        if host is None:
            raise EmitError(f"call to unbound import {func_index}")
        args = [stack.pop() for _ in host.params][::-1]
        base = args[0].slot if args else stack.height
        stack.truncate(base)
        target = None
        if host.results:
            target = slot(stack.push(host.results[0]))
        buf.extend(host.expand(buf.namespace, [slot(a.slot) for a in args], target))

    # -- memory ---------------------------------------------------------

    def bounds_check(self, buf, address, offset, width):
        end = offset + width
        if end > MAX_PAGES * PAGE_SIZE:
            buf.trap("out_of_bounds_memory_access")
            return
        buf.copy("%ma", address)
        buf.copy("%mo", "%membytes")
        buf.add("%mo", -end)
        buf.trap("out_of_bounds_memory_access", f"if {matches('%ma', '..-1')}")
        buf.trap("out_of_bounds_memory_access", f"if {compare('%ma', '>', '%mo')}")
        buf.add("%ma", offset)

    def memory_access(self, buf, stack, op, imm):
        value_type, width, signed = MEMORY_ACCESS[op]
        _, offset = imm
        if ".store" in op:
            value = stack.pop()
            address = stack.pop()
            self.bounds_check(buf, slot(address.slot), offset, width)
            src = slot(value.slot)
            if width == 1:
                buf.copy("%m8", src)
            else:
                buf.copy("%mv", src)
                if width == 8:
                    buf.copy("%mvh", src + "h")
            buf.call(f"rt/mem/store{width * 8}")
            return

        address = stack.pop()
        self.bounds_check(buf, slot(address.slot), offset, width)
        buf.call(f"rt/mem/load{width * 8}")
        target = slot(stack.push(value_type))
        if width == 8:
            buf.copy(target, "%mv")
            buf.copy(target + "h", "%mvh")
            return
        buf.copy(target, "%m8" if width == 1 else "%mv")
        if signed and width < 4:
            self.sign_extend(buf, target, width * 8)
        if value_type == "i64":
            if signed:
                self.sign_into_high(buf, target)
            else:
                buf.set(target + "h", 0)

    def sign_extend(self, buf, reg, bits):
        buf.op(reg, "%=", buf.const(1 << bits))
        buf.when(
            matches(reg, f"{1 << (bits - 1)}.."),
            f"scoreboard players remove {score(reg)} {1 << bits}",
        )

    def sign_into_high(self, buf, reg):
        buf.store_condition(reg + "h", f"if {matches(reg, '..-1')}")
        buf.op(reg + "h", "*=", buf.const(-1))

    # -- i32 ------------------------------------------------------------

    def binary(self, stack, value_type):
        b = stack.pop()
        a = stack.pop()
        stack.push(value_type)
        return a, b

    def i32_op(self, buf, stack, name, op):
        if name in ("eqz", "clz", "ctz", "popcnt", "extend8_s", "extend16_s", "wrap_i64",
                    "reinterpret_f32"):
            value = stack.pop()
            stack.push("i32")
            self.i32_unary(buf, slot(value.slot), name)
            return
        a, b = self.binary(stack, "i32")
        A, B = slot(a.slot), slot(b.slot)
        if name == "add":
            if b.const is not None:
                buf.add(A, b.const)
            else:
                buf.op(A, "+=", B)
        elif name == "sub":
            if b.const is not None and b.const != INT32_MIN:
                buf.add(A, -b.const)
            else:
                buf.op(A, "-=", B)
        elif name == "mul":
            buf.op(A, "*=", B)
        elif name in ("div_s", "rem_s"):
            self.i32_signed_division(buf, A, B, b.const, name)
        elif name in ("div_u", "rem_u"):
            self.i32_unsigned_division(buf, A, B, b.const, name)
        elif name in _BITWISE:
            self.i32_bitwise(buf, A, B, b.const, name)
        elif name in ("shl", "shr_s", "shr_u"):
            if b.const is not None:
                self.i32_const_shift(buf, A, b.const & 31, name)
            else:
                self.helper_i32(buf, A, B, f"rt/i32/{name}", out="%x")
        elif name in ("rotl", "rotr"):
            self.helper_i32(buf, A, B, f"rt/i32/{name}", out="%x")
        elif name in ("eq", "ne"):
            buf.store_condition(A, f"{'if' if name == 'eq' else 'unless'} {compare(A, '=', B)}")
        elif name in _SIGNED_COMPARE:
            buf.store_condition(A, f"if {compare(A, _SIGNED_COMPARE[name], B)}")
        elif name in _UNSIGNED_COMPARE:
            self.biased_pair(buf, A, B)
            buf.store_condition(A, f"if {compare('%t0', _UNSIGNED_COMPARE[name], '%t1')}")
        else:
            raise EmitError(f"no lowering for {op}")

    def i32_unary(self, buf, A, name):
        if name == "eqz":
            buf.store_condition(A, f"if {matches(A, '0')}")
        elif name in ("clz", "ctz", "popcnt"):
            buf.copy("%x", A)
            buf.call(f"rt/i32/{name}")
            buf.copy(A, "%q")
        elif name == "extend8_s":
            self.sign_extend(buf, A, 8)
        elif name == "extend16_s":
            self.sign_extend(buf, A, 16)
        # wrap_i64 keeps the low word; reinterpret keeps the bits.

    def biased_pair(self, buf, A, B):
        """Bias both operands into %t0/%t1 so signed comparison orders them unsigned."""
        minimum = buf.const(INT32_MIN)
        buf.copy("%t0", A)
        buf.op("%t0", "+=", minimum)
        buf.copy("%t1", B)
        buf.op("%t1", "+=", minimum)

    def helper_i32(self, buf, A, B, path, out="%q"):
        buf.copy("%x", A)
        buf.copy("%y", B)
        buf.call(path)
        buf.copy(A, out)

    def i32_signed_division(self, buf, A, B, divisor, name):
        if divisor == 0:
            buf.trap("divide_by_zero")
            return
        if divisor is None:
            buf.trap("divide_by_zero", f"if {matches(B, '0')}")
        if name == "div_s":
            if divisor is None or divisor == -1:
                buf.trap(
                    "integer_overflow",
                    f"if {matches(A, str(INT32_MIN))}",
                    f"if {matches(B, '-1')}",
                )
            # floor division rounds toward negative infinity; step back
            # toward zero when the remainder is nonzero and the signs differ
            buf.copy("%t0", A)
            buf.op("%t0", "%=", B)
            buf.copy("%t1", A)
            buf.op(A, "/=", B)
            increment = f"scoreboard players add {score(A)} 1"
            buf.when_all(
                [f"unless {matches('%t0', '0')}", f"if {matches('%t1', '..-1')}",
                 f"if {matches(B, '1..')}"],
                increment,
            )
            buf.when_all(
                [f"unless {matches('%t0', '0')}", f"if {matches('%t1', '0..')}",
                 f"if {matches(B, '..-1')}"],
                increment,
            )
        else:
            buf.copy("%t1", A)
            buf.op(A, "%=", B)
            adjust = f"scoreboard players operation {score(A)} -= {score(B)}"
            buf.when_all(
                [f"unless {matches(A, '0')}", f"if {matches('%t1', '..-1')}",
                 f"if {matches(B, '1..')}"],
                adjust,
            )
            buf.when_all(
                [f"unless {matches(A, '0')}", f"if {matches('%t1', '0..')}",
                 f"if {matches(B, '..-1')}"],
                adjust,
            )

    def i32_unsigned_division(self, buf, A, B, divisor, name):
        if divisor == 0:
            buf.trap("divide_by_zero")
            return
        if divisor is not None and 0 < divisor and divisor & (divisor - 1) == 0:
            k = divisor.bit_length() - 1
            if name == "div_u":
                self.i32_const_shift(buf, A, k, "shr_u")
            elif k < 31:
                buf.op(A, "%=", buf.const(divisor))
            return
        if divisor is None:
            buf.trap("divide_by_zero", f"if {matches(B, '0')}")
        self.helper_i32(buf, A, B, "rt/i32/divu", out="%q" if name == "div_u" else "%rem")

    def i32_bitwise(self, buf, A, B, mask, name):
        if name == "and" and mask is not None:
            if mask == -1:
                return
            if mask == 0:
                buf.set(A, 0)
                return
            if mask == 0x7FFFFFFF:
                buf.when(
                    matches(A, "..-1"),
                    f"scoreboard players operation {score(A)} -= {score(buf.const(INT32_MIN))}",
                )
                return
            if mask > 0 and mask & (mask + 1) == 0:
                buf.op(A, "%=", buf.const(mask + 1))
                return
        if name == "or" and mask == 0:
            return
        if name == "xor" and mask == 0:
            return
        self.helper_i32(buf, A, B, f"rt/i32/{name}")

    def i32_const_shift(self, buf, A, k, name):
        if k == 0:
            return
        if name == "shl":
            buf.op(A, "*=", buf.const(1 << k))
        elif name == "shr_s":
            if k == 31:
                buf.store_condition(A, f"if {matches(A, '..-1')}")
                buf.op(A, "*=", buf.const(-1))
            else:
                buf.op(A, "/=", buf.const(1 << k))
        elif k == 31:
            buf.store_condition(A, f"if {matches(A, '..-1')}")
        elif k == 1:
            buf.op(A, "/=", buf.const(2))
            buf.when(
                matches(A, "..-1"),
                f"scoreboard players operation {score(A)} -= {score(buf.const(INT32_MIN))}",
            )
        else:
            buf.op(A, "/=", buf.const(1 << k))
            buf.when(matches(A, "..-1"), f"scoreboard players add {score(A)} {1 << (32 - k)}")

    # -- i64 ------------------------------------------------------------

    def i64_op(self, buf, stack, name, op):
        if name in ("eqz", "clz", "ctz", "popcnt", "extend8_s", "extend16_s", "extend32_s",
                    "extend_i32_s", "extend_i32_u", "reinterpret_f64"):
            value = stack.pop()
            stack.push("i32" if name == "eqz" else "i64")
            self.i64_unary(buf, slot(value.slot), name)
            return
        comparison = name in ("eq", "ne") or name in _SIGNED_COMPARE or name in _UNSIGNED_COMPARE
        a, b = self.binary(stack, "i32" if comparison else "i64")
        A, B = slot(a.slot), slot(b.slot)
        AH, BH = A + "h", B + "h"
        minimum = buf.const(INT32_MIN)
        if name == "add":
            buf.copy("%t0", A)
            buf.op(A, "+=", B)
            buf.op(AH, "+=", BH)
            buf.copy("%t1", A)
            buf.op("%t1", "+=", minimum)
            buf.op("%t0", "+=", minimum)
            buf.when(compare("%t1", "<", "%t0"), f"scoreboard players add {score(AH)} 1")
        elif name == "sub":
            self.biased_pair(buf, A, B)
            buf.op(A, "-=", B)
            buf.op(AH, "-=", BH)
            buf.when(compare("%t0", "<", "%t1"), f"scoreboard players remove {score(AH)} 1")
        elif name == "mul":
            self.helper_i64(buf, A, B, "rt/i64/mul", "%q")
        elif name in ("div_s", "div_u", "rem_s", "rem_u"):
            buf.trap("divide_by_zero", f"if {matches(B, '0')}", f"if {matches(BH, '0')}")
            if name == "div_s":
                buf.trap(
                    "integer_overflow",
                    f"if {matches(A, '0')}",
                    f"if {matches(AH, str(INT32_MIN))}",
                    f"if {matches(B, '-1')}",
                    f"if {matches(BH, '-1')}",
                )
            path = "rt/i64/divs" if name.endswith("_s") else "rt/i64/divu"
            self.helper_i64(buf, A, B, path, "%q" if name.startswith("div") else "%rem")
        elif name in _BITWISE:
            self.helper_i32(buf, A, B, f"rt/i32/{name}")
            self.helper_i32(buf, AH, BH, f"rt/i32/{name}")
        elif name in _I64_HELPERS:
            buf.copy("%x", A)
            buf.copy("%xh", AH)
            buf.copy("%y", B)
            buf.call(_I64_HELPERS[name])
            buf.copy(A, "%q")
            buf.copy(AH, "%qh")
        elif name == "eq":
            buf.store_condition(A, f"if {compare(A, '=', B)}", f"if {compare(AH, '=', BH)}")
        elif name == "ne":
            buf.store_condition(A, f"if {compare(A, '=', B)}", f"if {compare(AH, '=', BH)}")
            buf.store_condition(A, f"if {matches(A, '0')}")
        elif name in _SIGNED_COMPARE or name in _UNSIGNED_COMPARE:
            self.i64_compare(buf, A, B, name)
        else:
            raise EmitError(f"no lowering for {op}")

    def i64_unary(self, buf, A, name):
        AH = A + "h"
        if name == "eqz":
            buf.store_condition(A, f"if {matches(A, '0')}", f"if {matches(AH, '0')}")
        elif name in ("clz", "ctz", "popcnt"):
            buf.copy("%x", A)
            buf.copy("%xh", AH)
            buf.call(f"rt/i64/{name}")
            buf.copy(A, "%q")
            buf.set(AH, 0)
        elif name == "extend8_s":
            self.sign_extend(buf, A, 8)
            self.sign_into_high(buf, A)
        elif name == "extend16_s":
            self.sign_extend(buf, A, 16)
            self.sign_into_high(buf, A)
        elif name in ("extend32_s", "extend_i32_s"):
            self.sign_into_high(buf, A)
        elif name == "extend_i32_u":
            buf.set(AH, 0)

    def helper_i64(self, buf, A, B, path, out):
        buf.copy("%x", A)
        buf.copy("%xh", A + "h")
        buf.copy("%y", B)
        buf.copy("%yh", B + "h")
        buf.call(path)
        buf.copy(A, out)
        buf.copy(A + "h", out + "h")

    def i64_compare(self, buf, A, B, name):
        kind = name[:2]
        strict = "<" if kind in ("lt", "le") else ">"
        low = {"lt": "<", "gt": ">", "le": "<=", "ge": ">="}[kind]
        AH, BH = A + "h", B + "h"
        minimum = buf.const(INT32_MIN)
        self.biased_pair(buf, A, B)
        high_a, high_b = AH, BH
        if name.endswith("_u"):
            buf.copy("%t2", AH)
            buf.op("%t2", "+=", minimum)
            buf.copy("%t3", BH)
            buf.op("%t3", "+=", minimum)
            high_a, high_b = "%t2", "%t3"
        buf.store_condition(A, f"if {compare(high_a, strict, high_b)}")
        buf.emit(
            f"execute if {compare(high_a, '=', high_b)} "
            f"store result score {score(A)} if {compare('%t0', low, '%t1')}"
        )

    # -- f32 / f64 ------------------------------------------------------

    def f32_op(self, buf, stack, name, op):
        self.float_op(buf, stack, name, op, wide=False)

    def f64_op(self, buf, stack, name, op):
        self.float_op(buf, stack, name, op, wide=True)

    def float_op(self, buf, stack, name, op, wide):
        value_type = "f64" if wide else "f32"
        if name in ("abs", "neg", "reinterpret_i32", "reinterpret_i64"):
            value = stack.pop()
            stack.push(value_type)
            sign = slot(value.slot, wide)
            if name == "abs":
                self.clear_sign(buf, sign)
            elif name == "neg":
                buf.op(sign, "+=", buf.const(INT32_MIN))
            return
        a, b = self.binary(stack, "i32" if name in _FLOAT_COMPARE else value_type)
        A, B = slot(a.slot), slot(b.slot)
        if name == "copysign":
            sign_a, sign_b = slot(a.slot, wide), slot(b.slot, wide)
            self.clear_sign(buf, sign_a)
            buf.when(
                matches(sign_b, "..-1"),
                f"scoreboard players operation {score(sign_a)} += {score(buf.const(INT32_MIN))}",
            )
            return
        buf.copy("%x", A)
        buf.copy("%y", B)
        if wide:
            buf.copy("%xh", A + "h")
            buf.copy("%yh", B + "h")
        buf.call(f"rt/{value_type}/cmp")
        if name in _FLOAT_COMPARE:
            keyword, spec = _FLOAT_COMPARE[name]
            buf.store_condition(A, f"{keyword} {matches('%q', spec)}")
        elif name in ("min", "max"):
            self.float_min_max(buf, A, B, name, wide)
        else:
            raise EmitError(f"no lowering for {op}")

    def clear_sign(self, buf, reg):
        buf.when(
            matches(reg, "..-1"),
            f"scoreboard players operation {score(reg)} -= {score(buf.const(INT32_MIN))}",
        )

    def float_min_max(self, buf, A, B, name, wide):
        pick_b = "1" if name == "min" else "-1"
        operator = "<" if name == "min" else ">"
        buf.when(matches("%q", pick_b), f"scoreboard players operation {score(A)} = {score(B)}")
        if wide:
            buf.when(
                matches("%q", pick_b),
                f"scoreboard players operation {score(A + 'h')} = {score(B + 'h')}",
            )
            # equal magnitudes with opposite signs only occur for zeros
            buf.when(
                matches("%q", "0"),
                f"scoreboard players operation {score(A + 'h')} {operator} {score(B + 'h')}",
            )
            buf.when(matches("%q", "2"), f"scoreboard players set {score(A + 'h')} "
                     f"{F64_CANONICAL_NAN_HI}")
            buf.when(matches("%q", "2"), f"scoreboard players set {score(A)} 0")
        else:
            buf.when(
                matches("%q", "0"),
                f"scoreboard players operation {score(A)} {operator} {score(B)}",
            )
            buf.when(matches("%q", "2"), f"scoreboard players set {score(A)} "
                     f"{F32_CANONICAL_NAN}")


__all__ = [
    "FunctionLowerer",
    "PSEUDO_OPS",
    "frame_entries",
    "frame_field",
    "restore_registers",
    "save_registers",
]
