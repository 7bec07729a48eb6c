"""Runtime support functions shared by every compiled module.

These are plain command functions placed under ``<ns>:rt/``.  Arithmetic
helpers communicate through fixed registers:

=============  =========================================================
``%x %xh``     first operand (low/high word)
``%y %yh``     second operand
``%q %qh``     result
``%rem %remh`` remainder of the division helpers
``%ma``        effective byte address for the memory helpers
``%mv %mvh``   value loaded or stored (16, 32 and 64 bit accesses)
``%m8``        value loaded or stored (8 bit accesses)
=============  =========================================================

Each helper family keeps its scratch registers to its own prefix so that a
helper may call another helper of a different family.
"""
from __future__ import annotations

from ..constants import (
    INT32_MIN,
    OBJECTIVE,
    TRAP_CODES,
    TRAP_MESSAGES,
    TURTLE_CLIPBOARD,
    TURTLE_PALETTE,
    WORDS_PER_PAGE,
)
from .lir import CommandBuffer, compare, matches, score

# Bytes 0..3 of a little-endian word sit at these multipliers.
_BYTE_SCALE = (1, 256, 65536, 16777216)
_PALETTE_RANGE = f"0..{len(TURTLE_PALETTE) - 1}"


class RuntimeLibrary:
    """Builds the ``rt/`` helper functions for one namespace."""

    def __init__(self, namespace, constants, budget=None, tables=()):
        self.namespace = namespace
        self.constants = constants
        self.budget = budget
        self.tables = list(tables)
        self.functions = {}

    def buffer(self, path):
        buf = CommandBuffer(self.namespace, self.constants)
        self.functions[path] = buf
        return buf

    def build(self):
        self.control()
        self.traps()
        self.i32_division()
        for name, accept in (("and", "2"), ("or", "1..2"), ("xor", "1")):
            self.i32_bitwise(name, accept)
        self.i32_shifts()
        self.i32_counts()
        self.i64_multiply()
        self.i64_division()
        self.i64_shifts()
        self.i64_counts()
        self.float_compare()
        self.memory()
        self.table_getters()
        self.turtle()
        return {path: buf.lines for path, buf in self.functions.items()}

    # -- control --------------------------------------------------------

    def control(self):
        rt = f"{self.namespace}:rt"

        buf = self.buffer("rt/return")
        buf.emit("$return run function $(k)")

        buf = self.buffer("rt/finish")
        buf.emit(f"data remove storage {rt} stack[-1]")
        buf.set("%done", 1)

        buf = self.buffer("rt/exit")
        buf.emit(f"data modify storage {rt} stack set value []")
        buf.set("%done", 1)

        buf = self.buffer("rt/reset")
        for reg in ("%trap", "%done", "%exit", "%depth"):
            buf.set(reg, 0)
        if self.budget is not None:
            buf.set("%budget", self.budget)
            buf.emit(f"schedule clear {rt}/resume")
        buf.emit(f"data modify storage {rt} stack set value []")

        if self.budget is not None:
            buf = self.buffer("rt/tick")
            buf.set("%budget", self.budget)

            buf = self.buffer("rt/resume")
            buf.emit(f"return run function {rt}/return with storage {rt} resume")

    def traps(self):
        for kind, code in TRAP_CODES.items():
            buf = self.buffer(f"rt/trap/{kind}")
            buf.set("%trap", code)
            buf.set("%done", 1)
            buf.emit(
                'tellraw @a {"text":"wasm trap: %s","color":"red"}' % TRAP_MESSAGES[kind]
            )

    # -- i32 ------------------------------------------------------------

    def i32_division(self):
        buf = self.buffer("rt/i32/divu")
        minimum = buf.const(INT32_MIN)
        two = buf.const(2)
        buf.when(matches("%y", "..-1"), buf.tail("rt/i32/divu_big"))
        buf.when(matches("%x", "0.."), buf.tail("rt/i32/divu_small"))
        # the dividend has its top bit set: divide half of it, then double
        buf.copy("%dh", "%x")
        buf.op("%dh", "/=", two)
        buf.op("%dh", "-=", minimum)
        buf.copy("%db", "%x")
        buf.op("%db", "%=", two)
        buf.copy("%q", "%dh")
        buf.op("%q", "/=", "%y")
        buf.copy("%rem", "%dh")
        buf.op("%rem", "%=", "%y")
        buf.op("%q", "+=", "%q")
        buf.op("%rem", "+=", "%rem")
        buf.op("%rem", "+=", "%db")
        self.biased_compare(buf, "%rem", "%y")
        buf.when(compare("%du", ">=", "%dv"), f"scoreboard players add {score('%q')} 1")
        buf.when(
            compare("%du", ">=", "%dv"),
            f"scoreboard players operation {score('%rem')} -= {score('%y')}",
        )

        buf = self.buffer("rt/i32/divu_big")
        buf.set("%q", 0)
        buf.copy("%rem", "%x")
        self.biased_compare(buf, "%x", "%y")
        buf.when(compare("%du", ">=", "%dv"), f"scoreboard players set {score('%q')} 1")
        buf.when(
            compare("%du", ">=", "%dv"),
            f"scoreboard players operation {score('%rem')} -= {score('%y')}",
        )

        buf = self.buffer("rt/i32/divu_small")
        buf.copy("%q", "%x")
        buf.op("%q", "/=", "%y")
        buf.copy("%rem", "%x")
        buf.op("%rem", "%=", "%y")

    def biased_compare(self, buf, a, b):
        minimum = buf.const(INT32_MIN)
        buf.copy("%du", a)
        buf.op("%du", "+=", minimum)
        buf.copy("%dv", b)
        buf.op("%dv", "+=", minimum)

    def i32_bitwise(self, name, accept):
        buf = self.buffer(f"rt/i32/{name}")
        minimum = buf.const(INT32_MIN)
        buf.set("%q", 0)
        buf.copy("%ba", "%x")
        buf.copy("%bb", "%y")
        buf.store_condition("%bx", f"if {matches('%ba', '..-1')}")
        buf.store_condition("%by", f"if {matches('%bb', '..-1')}")
        buf.when(matches("%bx", "1"), f"scoreboard players operation {score('%ba')} -= {score(minimum)}")
        buf.when(matches("%by", "1"), f"scoreboard players operation {score('%bb')} -= {score(minimum)}")
        buf.copy("%bs", "%bx")
        buf.op("%bs", "+=", "%by")
        buf.when(matches("%bs", accept), f"scoreboard players set {score('%q')} {INT32_MIN}")
        for bit in range(30, -1, -1):
            weight = 1 << bit
            buf.store_condition("%bx", f"if {matches('%ba', f'{weight}..')}")
            buf.store_condition("%by", f"if {matches('%bb', f'{weight}..')}")
            buf.when(matches("%bx", "1"), f"scoreboard players remove {score('%ba')} {weight}")
            buf.when(matches("%by", "1"), f"scoreboard players remove {score('%bb')} {weight}")
            buf.copy("%bs", "%bx")
            buf.op("%bs", "+=", "%by")
            buf.when(matches("%bs", accept), f"scoreboard players add {score('%q')} {weight}")

    def shift_steps(self, buf, operator):
        for step in (16, 8, 4, 2, 1):
            buf.when(
                matches("%sk", f"{step}.."),
                f"scoreboard players operation {score('%x')} {operator} {score(buf.const(1 << step))}",
            )
            buf.when(matches("%sk", f"{step}.."), f"scoreboard players remove {score('%sk')} {step}")

    def i32_shifts(self):
        for name, operator in (("shl", "*="), ("shr_s", "/=")):
            buf = self.buffer(f"rt/i32/{name}")
            buf.copy("%sk", "%y")
            buf.op("%sk", "%=", buf.const(32))
            self.shift_steps(buf, operator)

        buf = self.buffer("rt/i32/shr_u")
        buf.copy("%sk", "%y")
        buf.op("%sk", "%=", buf.const(32))
        buf.when(matches("%sk", "0"), "return 0")
        # one logical step clears the sign, the rest are arithmetic
        buf.op("%x", "/=", buf.const(2))
        buf.when(
            matches("%x", "..-1"),
            f"scoreboard players operation {score('%x')} -= {score(buf.const(INT32_MIN))}",
        )
        buf.add("%sk", -1)
        self.shift_steps(buf, "/=")

        buf = self.buffer("rt/i32/rotl")
        buf.copy("%rk", "%y")
        buf.op("%rk", "%=", buf.const(32))
        buf.when(matches("%rk", "0"), "return 0")
        buf.copy("%ra", "%x")
        buf.copy("%y", "%rk")
        buf.call("rt/i32/shl")
        buf.copy("%rt", "%x")
        buf.copy("%x", "%ra")
        buf.set("%y", 32)
        buf.op("%y", "-=", "%rk")
        buf.call("rt/i32/shr_u")
        buf.op("%x", "+=", "%rt")

        buf = self.buffer("rt/i32/rotr")
        buf.op("%y", "*=", buf.const(-1))
        buf.jump("rt/i32/rotl")

    def i32_counts(self):
        buf = self.buffer("rt/i32/clz")
        buf.set("%q", 0)
        buf.when(matches("%x", "..-1"), "return 0")
        buf.set("%q", 32)
        buf.when(matches("%x", "0"), "return 0")
        for bit in range(30, -1, -1):
            buf.when(
                matches("%x", f"{1 << bit}.."),
                f"return run scoreboard players set {score('%q')} {31 - bit}",
            )

        buf = self.buffer("rt/i32/ctz")
        buf.set("%q", 32)
        buf.when(matches("%x", "0"), "return 0")
        for bit in range(30):
            buf.copy("%bt", "%x")
            buf.op("%bt", "%=", buf.const(1 << (bit + 1)))
            buf.when(
                matches("%bt", "0"),
                f"return run scoreboard players set {score('%q')} {bit}",
                negate=True,
            )
        buf.when(
            matches("%x", str(INT32_MIN)),
            f"return run scoreboard players set {score('%q')} 31",
        )
        buf.set("%q", 30)

        buf = self.buffer("rt/i32/popcnt")
        buf.copy("%ba", "%x")
        buf.store_condition("%q", f"if {matches('%ba', '..-1')}")
        buf.when(
            matches("%ba", "..-1"),
            f"scoreboard players operation {score('%ba')} -= {score(buf.const(INT32_MIN))}",
        )
        for bit in range(30, -1, -1):
            weight = 1 << bit
            buf.when(matches("%ba", f"{weight}.."), f"scoreboard players add {score('%q')} 1")
            buf.when(matches("%ba", f"{weight}.."), f"scoreboard players remove {score('%ba')} {weight}")

    # -- i64 ------------------------------------------------------------

    def split_halves(self, buf, src, lo, hi):
        half = buf.const(65536)
        buf.copy(lo, src)
        buf.op(lo, "%=", half)
        buf.copy(hi, src)
        buf.op(hi, "/=", half)
        buf.op(hi, "%=", half)

    def i64_multiply(self):
        buf = self.buffer("rt/i64/mulhi_u")
        half = buf.const(65536)
        self.split_halves(buf, "%x", "%u0", "%u1")
        self.split_halves(buf, "%y", "%v0", "%v1")
        buf.copy("%ut", "%u0")
        buf.op("%ut", "*=", "%v0")
        buf.copy("%uk", "%ut")
        buf.op("%uk", "/=", half)
        buf.op("%uk", "%=", half)
        buf.copy("%ut", "%u1")
        buf.op("%ut", "*=", "%v0")
        buf.op("%ut", "+=", "%uk")
        buf.copy("%uw", "%ut")
        buf.op("%uw", "%=", half)
        buf.copy("%uc", "%ut")
        buf.op("%uc", "/=", half)
        buf.op("%uc", "%=", half)
        buf.copy("%ut", "%u0")
        buf.op("%ut", "*=", "%v1")
        buf.op("%ut", "+=", "%uw")
        buf.copy("%uk", "%ut")
        buf.op("%uk", "/=", half)
        buf.op("%uk", "%=", half)
        buf.copy("%uh", "%u1")
        buf.op("%uh", "*=", "%v1")
        buf.op("%uh", "+=", "%uc")
        buf.op("%uh", "+=", "%uk")

        buf = self.buffer("rt/i64/mul")
        buf.call("rt/i64/mulhi_u")
        buf.copy("%qh", "%uh")
        buf.copy("%ut", "%x")
        buf.op("%ut", "*=", "%yh")
        buf.op("%qh", "+=", "%ut")
        buf.copy("%ut", "%xh")
        buf.op("%ut", "*=", "%y")
        buf.op("%qh", "+=", "%ut")
        buf.copy("%q", "%x")
        buf.op("%q", "*=", "%y")

    def shift_pair_left(self, buf, lo, hi, carry):
        """``hi:lo <<= 1``, using ``carry`` as scratch."""
        buf.store_condition(carry, f"if {matches(lo, '..-1')}")
        buf.op(hi, "+=", hi)
        buf.op(hi, "+=", carry)
        buf.op(lo, "+=", lo)

    def negate_pair(self, buf, lo, hi):
        buf.op(lo, "*=", buf.const(-1))
        buf.op(hi, "*=", buf.const(-1))
        buf.when(matches(lo, "0"), f"scoreboard players remove {score(hi)} 1", negate=True)

    def i64_division(self):

        buf = self.buffer("rt/i64/divu")
        minimum = buf.const(INT32_MIN)
        for reg in ("%q", "%qh", "%rem", "%remh"):
            buf.set(reg, 0)
        buf.copy("%el", "%x")
        buf.copy("%eh", "%xh")
        buf.set("%en", 64)
        buf.copy("%eyl", "%y")
        buf.op("%eyl", "+=", minimum)
        buf.copy("%eyh", "%yh")
        buf.op("%eyh", "+=", minimum)
        buf.call("rt/i64/divu_step")

        # one step of restoring division: shift a dividend bit into the
        # remainder and subtract the divisor when it fits
        buf = self.buffer("rt/i64/divu_step")
        buf.store_condition("%eo", f"if {matches('%remh', '..-1')}")
        self.shift_pair_left(buf, "%rem", "%remh", "%ec")
        buf.store_condition("%eb", f"if {matches('%eh', '..-1')}")
        self.shift_pair_left(buf, "%el", "%eh", "%ec")
        buf.op("%rem", "+=", "%eb")
        self.shift_pair_left(buf, "%q", "%qh", "%ec")
        buf.copy("%eu", "%remh")
        buf.op("%eu", "+=", minimum)
        buf.copy("%ev", "%rem")
        buf.op("%ev", "+=", minimum)
        buf.set("%ec", 0)
        buf.when(compare("%eu", ">", "%eyh"), f"scoreboard players set {score('%ec')} 1")
        buf.when_all(
            [f"if {compare('%eu', '=', '%eyh')}", f"if {compare('%ev', '>=', '%eyl')}"],
            f"scoreboard players set {score('%ec')} 1",
        )
        buf.when(matches("%eo", "1"), f"scoreboard players set {score('%ec')} 1")
        buf.when(matches("%ec", "1"), f"function {buf.fn('rt/i64/divu_sub')}")
        buf.add("%en", -1)
        buf.when(matches("%en", "1.."), buf.tail("rt/i64/divu_step"))

        buf = self.buffer("rt/i64/divu_sub")
        buf.store_condition("%ec", f"if {compare('%ev', '<', '%eyl')}")
        buf.op("%rem", "-=", "%y")
        buf.op("%remh", "-=", "%yh")
        buf.op("%remh", "-=", "%ec")
        buf.add("%q", 1)

        for name, lo, hi in (("x", "%x", "%xh"), ("y", "%y", "%yh"), ("q", "%q", "%qh"),
                             ("rem", "%rem", "%remh")):
            buf = self.buffer(f"rt/i64/neg_{name}")
            self.negate_pair(buf, lo, hi)

        buf = self.buffer("rt/i64/divs")
        buf.store_condition("%esx", f"if {matches('%xh', '..-1')}")
        buf.store_condition("%esy", f"if {matches('%yh', '..-1')}")
        buf.when(matches("%esx", "1"), f"function {buf.fn('rt/i64/neg_x')}")
        buf.when(matches("%esy", "1"), f"function {buf.fn('rt/i64/neg_y')}")
        buf.call("rt/i64/divu")
        buf.copy("%est", "%esx")
        buf.op("%est", "+=", "%esy")
        buf.when(matches("%est", "1"), f"function {buf.fn('rt/i64/neg_q')}")
        buf.when(matches("%esx", "1"), f"function {buf.fn('rt/i64/neg_rem')}")

    def i64_shifts(self):
        for name in ("shl", "shr_u", "shr_s"):
            buf = self.buffer(f"rt/i64/{name}")
            buf.copy("%hk", "%y")
            buf.op("%hk", "%=", buf.const(64))
            buf.copy("%q", "%x")
            buf.copy("%qh", "%xh")
            buf.when(matches("%hk", "0"), "return 0")
            buf.when(matches("%hk", "32.."), buf.tail(f"rt/i64/{name}_big"))
            buf.copy("%ha", "%x")
            buf.copy("%hb", "%xh")
            if name == "shl":
                # hi = hi << k | lo >>> (32 - k); lo = lo << k
                self.i32_call(buf, "%hb", "%hk", "shl", "%qh")
                self.i32_call(buf, "%ha", None, "shr_u", "%hc")
                buf.op("%qh", "+=", "%hc")
                self.i32_call(buf, "%ha", "%hk", "shl", "%q")
            else:
                # lo = lo >>> k | hi << (32 - k); hi = hi >> k
                self.i32_call(buf, "%ha", "%hk", "shr_u", "%q")
                self.i32_call(buf, "%hb", None, "shl", "%hc")
                buf.op("%q", "+=", "%hc")
                self.i32_call(buf, "%hb", "%hk", name, "%qh")

            buf = self.buffer(f"rt/i64/{name}_big")
            buf.copy("%y", "%hk")
            buf.add("%y", -32)
            if name == "shl":
                buf.copy("%x", "%q")
                buf.call("rt/i32/shl")
                buf.copy("%qh", "%x")
                buf.set("%q", 0)
            else:
                buf.copy("%x", "%qh")
                buf.call(f"rt/i32/{name}")
                buf.copy("%q", "%x")
                if name == "shr_u":
                    buf.set("%qh", 0)
                else:
                    buf.store_condition("%qh", f"if {matches('%xh', '..-1')}")
                    buf.op("%qh", "*=", buf.const(-1))

        buf = self.buffer("rt/i64/rotl")
        buf.copy("%hr", "%y")
        buf.op("%hr", "%=", buf.const(64))
        buf.copy("%q", "%x")
        buf.copy("%qh", "%xh")
        buf.when(matches("%hr", "0"), "return 0")
        buf.copy("%hx", "%x")
        buf.copy("%hxh", "%xh")
        buf.copy("%y", "%hr")
        buf.call("rt/i64/shl")
        buf.copy("%hq", "%q")
        buf.copy("%hqh", "%qh")
        buf.copy("%x", "%hx")
        buf.copy("%xh", "%hxh")
        buf.set("%y", 64)
        buf.op("%y", "-=", "%hr")
        buf.call("rt/i64/shr_u")
        buf.op("%q", "+=", "%hq")
        buf.op("%qh", "+=", "%hqh")

        buf = self.buffer("rt/i64/rotr")
        buf.op("%y", "*=", buf.const(-1))
        buf.jump("rt/i64/rotl")

    def i32_call(self, buf, src, amount, name, dst):
        """``dst = src <op> amount`` through an i32 shift helper.

        With ``amount`` None the complementary amount ``32 - %hk`` is used.
        """
        buf.copy("%x", src)
        if amount is None:
            buf.set("%y", 32)
            buf.op("%y", "-=", "%hk")
        else:
            buf.copy("%y", amount)
        buf.call(f"rt/i32/{name}")
        buf.copy(dst, "%x")

    def i64_counts(self):
        buf = self.buffer("rt/i64/clz")
        buf.copy("%ca", "%x")
        buf.copy("%x", "%xh")
        buf.call("rt/i32/clz")
        buf.when(matches("%q", "32"), "return 0", negate=True)
        buf.copy("%x", "%ca")
        buf.call("rt/i32/clz")
        buf.add("%q", 32)

        buf = self.buffer("rt/i64/ctz")
        buf.call("rt/i32/ctz")
        buf.when(matches("%q", "32"), "return 0", negate=True)
        buf.copy("%x", "%xh")
        buf.call("rt/i32/ctz")
        buf.add("%q", 32)

        buf = self.buffer("rt/i64/popcnt")
        buf.call("rt/i32/popcnt")
        buf.copy("%ca", "%q")
        buf.copy("%x", "%xh")
        buf.call("rt/i32/popcnt")
        buf.op("%q", "+=", "%ca")

    # -- floats ---------------------------------------------------------

    def magnitude(self, buf, dst, src):
        buf.copy(dst, src)
        buf.when(
            matches(dst, "..-1"),
            f"scoreboard players operation {score(dst)} -= {score(buf.const(INT32_MIN))}",
        )

    def order_by_sign(self, buf, a_sign, b_sign):
        buf.when_all(
            [f"if {matches(a_sign, '..-1')}", f"if {matches(b_sign, '0..')}"],
            f"return run scoreboard players set {score('%q')} -1",
        )
        buf.when_all(
            [f"if {matches(a_sign, '0..')}", f"if {matches(b_sign, '..-1')}"],
            f"return run scoreboard players set {score('%q')} 1",
        )

    def float_compare(self):
        """``%q`` = -1, 0 or 1 ordering ``%x`` against ``%y``; 2 when unordered."""
        buf = self.buffer("rt/f32/cmp")
        self.magnitude(buf, "%fa", "%x")
        self.magnitude(buf, "%fb", "%y")
        buf.set("%q", 2)
        buf.when(matches("%fa", "2139095041.."), "return 0")
        buf.when(matches("%fb", "2139095041.."), "return 0")
        buf.set("%q", 0)
        buf.when_all([f"if {matches('%fa', '0')}", f"if {matches('%fb', '0')}"], "return 0")
        self.order_by_sign(buf, "%x", "%y")
        buf.when(compare("%fa", "<", "%fb"), f"scoreboard players set {score('%q')} -1")
        buf.when(compare("%fa", ">", "%fb"), f"scoreboard players set {score('%q')} 1")
        buf.when(
            matches("%x", "..-1"),
            f"scoreboard players operation {score('%q')} *= {score(buf.const(-1))}",
        )

        buf = self.buffer("rt/f64/cmp")
        minimum = buf.const(INT32_MIN)
        self.magnitude(buf, "%fa", "%xh")
        self.magnitude(buf, "%fb", "%yh")
        buf.set("%q", 2)
        for hi, lo in (("%fa", "%x"), ("%fb", "%y")):
            buf.when(matches(hi, "2146435073.."), "return 0")
            buf.when_all([f"if {matches(hi, '2146435072')}", f"unless {matches(lo, '0')}"], "return 0")
        buf.set("%q", 0)
        buf.when_all(
            [f"if {matches('%fa', '0')}", f"if {matches('%x', '0')}",
             f"if {matches('%fb', '0')}", f"if {matches('%y', '0')}"],
            "return 0",
        )
        self.order_by_sign(buf, "%xh", "%yh")
        buf.copy("%fc", "%x")
        buf.op("%fc", "+=", minimum)
        buf.copy("%fd", "%y")
        buf.op("%fd", "+=", minimum)
        buf.when(compare("%fa", "<", "%fb"), f"scoreboard players set {score('%q')} -1")
        buf.when(compare("%fa", ">", "%fb"), f"scoreboard players set {score('%q')} 1")
        buf.when_all(
            [f"if {compare('%fa', '=', '%fb')}", f"if {compare('%fc', '<', '%fd')}"],
            f"scoreboard players set {score('%q')} -1",
        )
        buf.when_all(
            [f"if {compare('%fa', '=', '%fb')}", f"if {compare('%fc', '>', '%fd')}"],
            f"scoreboard players set {score('%q')} 1",
        )
        buf.when(
            matches("%xh", "..-1"),
            f"scoreboard players operation {score('%q')} *= {score(buf.const(-1))}",
        )

    # -- linear memory --------------------------------------------------

    def memory(self):
        ns = self.namespace
        rt = f"{ns}:rt"
        pages = f"{ns}:memory pages"

        buf = self.buffer("rt/mem/get")
        buf.emit(f"$execute store result score {score('%mw')} run data get storage {pages}[$(p)][$(i)]")

        buf = self.buffer("rt/mem/set")
        buf.emit(
            f"$execute store result storage {pages}[$(p)][$(i)] int 1 "
            f"run scoreboard players get {score('%mw')}"
        )

        buf = self.buffer("rt/mem/locate")
        four = buf.const(4)
        page = buf.const(WORDS_PER_PAGE)
        buf.copy("%mw", "%ma")
        buf.op("%mw", "/=", four)
        buf.copy("%mb", "%ma")
        buf.op("%mb", "%=", four)
        buf.copy("%mp", "%mw")
        buf.op("%mp", "/=", page)
        buf.copy("%mi", "%mw")
        buf.op("%mi", "%=", page)
        buf.emit(f"execute store result storage {rt} m.p int 1 run scoreboard players get {score('%mp')}")
        buf.emit(f"execute store result storage {rt} m.i int 1 run scoreboard players get {score('%mi')}")

        buf = self.buffer("rt/mem/load8")
        buf.call("rt/mem/locate")
        buf.call_with("rt/mem/get", "rt", "m")
        buf.copy("%m8", "%mw")
        for byte in (1, 2, 3):
            buf.when(
                matches("%mb", str(byte)),
                f"scoreboard players operation {score('%m8')} /= {score(buf.const(_BYTE_SCALE[byte]))}",
            )
        buf.op("%m8", "%=", buf.const(256))

        buf = self.buffer("rt/mem/load16")
        self.gather_bytes(buf, 2)

        buf = self.buffer("rt/mem/load32")
        buf.call("rt/mem/locate")
        buf.when(matches("%mb", "0"), buf.tail("rt/mem/load32_unaligned"), negate=True)
        buf.call_with("rt/mem/get", "rt", "m")
        buf.copy("%mv", "%mw")

        buf = self.buffer("rt/mem/load32_unaligned")
        self.gather_bytes(buf, 4)

        buf = self.buffer("rt/mem/load64")
        buf.copy("%mk", "%ma")
        buf.call("rt/mem/load32")
        buf.copy("%mlo", "%mv")
        buf.copy("%ma", "%mk")
        buf.add("%ma", 4)
        buf.call("rt/mem/load32")
        buf.copy("%mvh", "%mv")
        buf.copy("%mv", "%mlo")
        buf.copy("%ma", "%mk")

        buf = self.buffer("rt/mem/store8")
        byte = buf.const(256)
        buf.call("rt/mem/locate")
        buf.call_with("rt/mem/get", "rt", "m")
        buf.copy("%mn", "%m8")
        buf.op("%mn", "%=", byte)
        buf.copy("%mz", "%mw")
        for index in (1, 2, 3):
            buf.when(
                matches("%mb", str(index)),
                f"scoreboard players operation {score('%mz')} /= {score(buf.const(_BYTE_SCALE[index]))}",
            )
        buf.op("%mz", "%=", byte)
        buf.op("%mn", "-=", "%mz")
        for index in (1, 2, 3):
            buf.when(
                matches("%mb", str(index)),
                f"scoreboard players operation {score('%mn')} *= {score(buf.const(_BYTE_SCALE[index]))}",
            )
        buf.op("%mw", "+=", "%mn")
        buf.call_with("rt/mem/set", "rt", "m")

        buf = self.buffer("rt/mem/store16")
        self.scatter_bytes(buf, 2)

        buf = self.buffer("rt/mem/store32")
        buf.call("rt/mem/locate")
        buf.when(matches("%mb", "0"), buf.tail("rt/mem/store32_unaligned"), negate=True)
        buf.copy("%mw", "%mv")
        buf.call_with("rt/mem/set", "rt", "m")

        buf = self.buffer("rt/mem/store32_unaligned")
        self.scatter_bytes(buf, 4)

        buf = self.buffer("rt/mem/store64")
        buf.copy("%mk", "%ma")
        buf.call("rt/mem/store32")
        buf.copy("%mlo", "%mv")
        buf.copy("%ma", "%mk")
        buf.add("%ma", 4)
        buf.copy("%mv", "%mvh")
        buf.call("rt/mem/store32")
        buf.copy("%mv", "%mlo")
        buf.copy("%ma", "%mk")

        self.memory_fill()
        self.memory_grow()

    def memory_fill(self):
        """Store the byte ``%m8`` into ``%mf`` bytes from ``%ma`` on.

        Whole words are written once ``%ma`` is aligned; ``%ma`` and ``%mf``
        are consumed.
        """
        buf = self.buffer("rt/mem/fill")
        buf.op("%m8", "%=", buf.const(256))
        buf.copy("%mr", "%m8")
        buf.op("%mr", "*=", buf.const(0x01010101))
        buf.jump("rt/mem/fill_head")

        buf = self.buffer("rt/mem/fill_head")
        buf.when(matches("%mf", "..0"), "return 0")
        buf.copy("%mt", "%ma")
        buf.op("%mt", "%=", buf.const(4))
        buf.when(matches("%mt", "0"), buf.tail("rt/mem/fill_words"))
        buf.call("rt/mem/store8")
        buf.add("%ma", 1)
        buf.add("%mf", -1)
        buf.jump("rt/mem/fill_head")

        buf = self.buffer("rt/mem/fill_words")
        buf.when(matches("%mf", "..3"), buf.tail("rt/mem/fill_tail"))
        buf.call("rt/mem/locate")
        buf.copy("%mw", "%mr")
        buf.call_with("rt/mem/set", "rt", "m")
        buf.add("%ma", 4)
        buf.add("%mf", -4)
        buf.jump("rt/mem/fill_words")

        buf = self.buffer("rt/mem/fill_tail")
        buf.when(matches("%mf", "..0"), "return 0")
        buf.call("rt/mem/store8")
        buf.add("%ma", 1)
        buf.add("%mf", -1)
        buf.jump("rt/mem/fill_tail")

    def gather_bytes(self, buf, count):
        buf.copy("%ml", "%ma")
        for index in range(count):
            if index:
                buf.copy("%ma", "%ml")
                buf.add("%ma", index)
            buf.call("rt/mem/load8")
            if index == 0:
                buf.copy("%mv", "%m8")
            else:
                buf.op("%m8", "*=", buf.const(_BYTE_SCALE[index]))
                buf.op("%mv", "+=", "%m8")
        buf.copy("%ma", "%ml")

    def scatter_bytes(self, buf, count):
        buf.copy("%ml", "%ma")
        for index in range(count):
            if index:
                buf.copy("%ma", "%ml")
                buf.add("%ma", index)
            buf.copy("%m8", "%mv")
            if index:
                buf.op("%m8", "/=", buf.const(_BYTE_SCALE[index]))
            buf.call("rt/mem/store8")
        buf.copy("%ma", "%ml")

    def memory_grow(self):
        """``%q`` = old page count after growing by ``%x`` pages, or -1."""
        ns = self.namespace
        buf = self.buffer("rt/mem/grow")
        buf.set("%q", -1)
        buf.when(matches("%x", "..-1"), "return 0")
        buf.when(compare("%x", ">", "%memmax"), "return 0")
        buf.copy("%mg", "%memsize")
        buf.op("%mg", "+=", "%x")
        buf.when(compare("%mg", ">", "%memmax"), "return 0")
        buf.copy("%q", "%memsize")
        buf.copy("%mg", "%x")
        buf.when(matches("%mg", "1.."), f"function {buf.fn('rt/mem/grow_loop')}")
        buf.op("%memsize", "+=", "%x")
        buf.copy("%membytes", "%memsize")
        buf.op("%membytes", "*=", buf.const(65536))

        buf = self.buffer("rt/mem/grow_loop")
        buf.emit(f"data modify storage {ns}:memory pages append from storage {ns}:rt zero_page")
        buf.add("%mg", -1)
        buf.when(matches("%mg", "1.."), buf.tail("rt/mem/grow_loop"))

    # -- tables ---------------------------------------------------------

    def table_getters(self):
        for index in range(len(self.tables)):
            buf = self.buffer(f"rt/table/t{index}")
            buf.emit(
                f"$execute store result score {score('%cf')} "
                f"run data get storage {self.namespace}:table t{index}[$(i)]"
            )

    # -- turtle ---------------------------------------------------------

    def turtle(self):
        rt = f"{self.namespace}:rt"

        buf = self.buffer("rt/turtle/select")
        for index, block in enumerate(TURTLE_PALETTE):
            buf.when(
                matches("%tb", str(index)),
                f'data modify storage {rt} turtle.block set value "{block}"',
            )

        buf = self.buffer("rt/turtle/set")
        buf.when(matches("%tb", _PALETTE_RANGE), "return 0", negate=True)
        buf.call("rt/turtle/select")
        buf.call_with("rt/turtle/place", "rt", "turtle")

        buf = self.buffer("rt/turtle/place")
        buf.emit("$setblock $(x) $(y) $(z) $(block)")

        buf = self.buffer("rt/turtle/get")
        buf.set("%tb", -1)
        buf.call_with("rt/turtle/probe", "rt", "turtle")

        buf = self.buffer("rt/turtle/probe")
        for index, block in enumerate(TURTLE_PALETTE):
            buf.emit(
                f"$execute if block $(x) $(y) $(z) {block} "
                f"run return run scoreboard players set %tb {OBJECTIVE} {index}"
            )

        self.turtle_regions()

    def turtle_regions(self):
        """Box operations between the turtle and the clipboard.

        ``rt/turtle/span`` turns the offsets ``%tdx %tdy %tdz`` into the far
        corner ``e*`` and the lower corner ``l*`` of the turtle box, and the
        far corner ``c*`` of the clipboard box, all in ``<ns>:rt turtle``.
        """
        rt = f"{self.namespace}:rt"
        cx, cy, cz = TURTLE_CLIPBOARD
        clipboard = f"{cx} {cy} {cz}"

        buf = self.buffer("rt/turtle/span")
        minus = buf.const(-1)
        for axis, origin in zip("xyz", TURTLE_CLIPBOARD):
            offset = f"%td{axis}"
            buf.emit(f"execute store result score {score('%ta')} run data get storage {rt} turtle.{axis}")
            buf.copy("%te", "%ta")
            buf.op("%te", "+=", offset)
            self.store_turtle(buf, f"e{axis}", "%te")
            buf.op("%ta", "<", "%te")
            self.store_turtle(buf, f"l{axis}", "%ta")
            buf.when(matches(offset, "..-1"), f"scoreboard players operation {score(offset)} *= {score(minus)}")
            buf.set("%te", origin)
            buf.op("%te", "+=", offset)
            self.store_turtle(buf, f"c{axis}", "%te")

        buf = self.buffer("rt/turtle/fill")
        buf.when(matches("%tb", _PALETTE_RANGE), "return 0", negate=True)
        buf.call("rt/turtle/select")
        buf.call("rt/turtle/span")
        buf.call_with("rt/turtle/fill_region", "rt", "turtle")

        buf = self.buffer("rt/turtle/fill_region")
        buf.emit("$fill $(x) $(y) $(z) $(ex) $(ey) $(ez) $(block)")

        buf = self.buffer("rt/turtle/copy")
        buf.call("rt/turtle/span")
        buf.call_with("rt/turtle/copy_region", "rt", "turtle")

        buf = self.buffer("rt/turtle/copy_region")
        buf.emit(f"$clone $(x) $(y) $(z) $(ex) $(ey) $(ez) {clipboard}")

        for path, mode in (("paste", "replace"), ("paste_masked", "masked")):
            buf = self.buffer(f"rt/turtle/{path}")
            buf.call("rt/turtle/span")
            buf.call_with(f"rt/turtle/{path}_region", "rt", "turtle")

            buf = self.buffer(f"rt/turtle/{path}_region")
            buf.emit(f"$clone {clipboard} $(cx) $(cy) $(cz) $(lx) $(ly) $(lz) {mode}")

    def store_turtle(self, buf, name, reg):
        buf.emit(
            f"execute store result storage {self.namespace}:rt turtle.{name} int 1 "
            f"run scoreboard players get {score(reg)}"
        )


def build_runtime(namespace, constants, budget=None, tables=()):
    """Mapping of ``rt/...`` paths to command lists."""
    return RuntimeLibrary(namespace, constants, budget, tables).build()


__all__ = ["RuntimeLibrary", "build_runtime"]
