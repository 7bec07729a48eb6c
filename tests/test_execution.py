import itertools
import math

import pytest

from wasmcraft.compiler import (
    CommandVM,
    CompileOptions,
    ModuleBuilder,
    ReferenceInstance,
    bits_to_float,
    compile_module,
    decode_module,
    to_bits,
    values_agree,
    wat_to_wasm,
)

SUM_TO_N = """
    i32.const 1
    local.set 1
    block
      loop
        local.get 1
        local.get 0
        i32.gt_s
        br_if 1
        local.get 2
        local.get 1
        i32.add
        local.set 2
        local.get 1
        i32.const 1
        i32.add
        local.set 1
        br 0
      end
    end
    local.get 2
"""

FACTORIAL = """
    i32.const 1
    local.set 1
    block
      loop
        local.get 0
        i32.eqz
        br_if 1
        local.get 1
        local.get 0
        i32.mul
        local.set 1
        local.get 0
        i32.const 1
        i32.sub
        local.set 0
        br 0
      end
    end
    local.get 1
"""

FIB = """
    local.get 0
    i32.const 2
    i32.lt_s
    if (result i32)
      local.get 0
    else
      local.get 0
      i32.const 1
      i32.sub
      call 0
      local.get 0
      i32.const 2
      i32.sub
      call 0
      i32.add
    end
"""

INF = float("inf")
NAN = float("nan")


class Pair:
    """A compiled datapack in the simulator next to the same binary on wasmtime."""

    def __init__(self, wat, **options):
        pytest.importorskip("wasmtime")
        self.data = wat_to_wasm(wat)
        self.options = CompileOptions(**options)
        self.assembled = compile_module(decode_module(self.data), self.options)
        self.vm = CommandVM(self.assembled)
        self.reference = ReferenceInstance(self.data)

    def call(self, export, *args):
        got = self.vm.call(export, *args)
        expected = self.reference.run(export, *args)
        types = self.assembled.manifest["exports"][export]["results"]
        assert values_agree(types, got.results, expected.results), (got.results, expected.results)
        assert got.trap == expected.trap
        assert got.exit_code == expected.exit_code
        assert got.output == expected.output
        assert got.text == expected.text
        return got

    def same_memory(self, address, length):
        return self.vm.read_memory(address, length) == self.reference.read_memory(address, length)

    def same_blocks(self, low, high):
        for position in itertools.product(*(range(a, b + 1) for a, b in zip(low, high))):
            assert self.vm.block_at(*position) == self.reference.block_at(*position), position


def func_wat(params, results, body, locals=()):
    signature = " ".join(
        [
            *(f"(param {t})" for t in params),
            *(f"(result {t})" for t in results),
            *(f"(local {t})" for t in locals),
        ]
    )
    return f'(module (func (export "f") {signature}\n{body}))'


def single(params, results, body, *args, locals=(), **options):
    return Pair(func_wat(params, results, body, locals), **options).call("f", *args)


def as_float(value_type, result):
    return bits_to_float(value_type, result.value)


def test_i32_addition_wraps():
    add = "local.get 0\nlocal.get 1\ni32.add"
    assert single(["i32", "i32"], ["i32"], add, 2147483647, 1).value == -2147483648
    assert single(["i32", "i32"], ["i32"], add, 0xFFFFFFFF, 1).value == 0


def test_iterative_factorial():
    assert single(["i32"], ["i32"], FACTORIAL, 5, locals=["i32"]).value == 120


def test_recursive_fibonacci():
    result = single(["i32"], ["i32"], FIB, 10)
    assert result.value == 55
    assert not result.trapped


def test_sum_loop_spreads_over_ticks_under_a_budget():
    budgeted = single(["i32"], ["i32"], SUM_TO_N, 50, locals=["i32", "i32"], budget=2)
    unbounded = single(["i32"], ["i32"], SUM_TO_N, 50, locals=["i32", "i32"], budget=None)
    assert budgeted.value == unbounded.value == 1275
    assert budgeted.ticks > 1
    assert unbounded.ticks == 0


def test_pending_resume_is_cancelled_by_reload_and_new_calls():
    b = ModuleBuilder()
    b.add_function(["i32"], ["i32"], SUM_TO_N, locals=["i32", "i32"], export="sum")
    assembled = compile_module(b.build(), CompileOptions(budget=1))
    vm = CommandVM(assembled)

    vm.set_score("%arg0", 100)
    vm.run_function(assembled.export_function("sum"))
    assert vm.score("%done") != 1
    assert vm.scheduled
    vm.reload()
    assert not vm.scheduled

    vm.set_score("%arg0", 100)
    vm.run_function(assembled.export_function("sum"))
    assert vm.scheduled
    result = vm.call("sum", 3)
    assert result.value == 6
    assert not vm.scheduled
    for _ in range(5):
        vm.tick()
    assert vm.score("%r0") == 6


def test_unaligned_store_is_little_endian():
    pair = Pair(
        """
        (module
          (memory (export "memory") 1)
          (func (export "store") (param i32 i32)
            local.get 0
            local.get 1
            i32.store align=1)
          (func (export "load8") (param i32) (result i32)
            local.get 0
            i32.load8_u)
          (func (export "load") (param i32) (result i32)
            local.get 0
            i32.load align=1))
        """
    )
    pair.call("store", 1, 0x12345678)
    assert [pair.call("load8", a).value for a in range(1, 5)] == [0x78, 0x56, 0x34, 0x12]
    assert pair.call("load", 1).value == 0x12345678
    assert pair.vm.read_memory(0, 6) == b"\x00\x78\x56\x34\x12\x00"
    assert pair.same_memory(0, 6)


def test_narrow_loads_and_stores():
    pair = Pair(
        r"""
        (module
          (memory (export "memory") 1)
          (data (i32.const 8) "\ff\80\01\02")
          (func (export "s8") (param i32) (result i32)
            local.get 0
            i32.load8_s)
          (func (export "s16") (param i32) (result i32)
            local.get 0
            i32.load16_s)
          (func (export "u32") (param i32) (result i64)
            local.get 0
            i64.load32_u)
          (func (export "put8") (param i32 i32)
            local.get 0
            local.get 1
            i32.store8)
          (func (export "put64") (param i32 i64)
            local.get 0
            local.get 1
            i64.store)
          (func (export "get64") (param i32) (result i64)
            local.get 0
            i64.load))
        """
    )
    assert pair.call("s8", 8).value == -1
    assert pair.call("s16", 8).value == -32513
    assert pair.call("u32", 8).value == 0x020180FF
    pair.call("put8", 9, 0x1FF)
    assert pair.call("u32", 8).value == 0x0201FFFF
    pair.call("put64", 21, -2)
    assert pair.call("get64", 21).value == -2
    assert pair.same_memory(0, 40)


def test_division_by_zero_traps_after_earlier_output():
    pair = Pair(
        """
        (module
          (import "env" "print" (func $print (param i32)))
          (func (export "f") (result i32)
            i32.const 1
            call $print
            i32.const 7
            i32.const 0
            i32.div_s
            i32.const 2
            call $print))
        """
    )
    result = pair.call("f")
    assert result.trap == "divide_by_zero"
    assert result.output == [1]
    assert result.results == []


def test_signed_division_overflow_traps():
    body = "local.get 0\nlocal.get 1\ni32.div_s"
    assert single(["i32", "i32"], ["i32"], body, -2147483648, -1).trap == "integer_overflow"
    rem = "local.get 0\nlocal.get 1\ni32.rem_s"
    assert single(["i32", "i32"], ["i32"], rem, -2147483648, -1).value == 0


I32_BINARY = [
    ("i32.sub", 5, 9),
    ("i32.mul", 65537, 65537),
    ("i32.div_s", -7, 2),
    ("i32.div_u", -1, 2),
    ("i32.rem_s", -7, 2),
    ("i32.rem_u", -7, 10),
    ("i32.and", -6, 0x0F0F),
    ("i32.or", 0x1200, -256),
    ("i32.xor", -1, 0x55),
    ("i32.shl", 3, 33),
    ("i32.shr_s", -64, 3),
    ("i32.shr_u", -64, 3),
    ("i32.rotl", 0x80000001, 4),
    ("i32.rotr", 0x80000001, 4),
    ("i32.lt_s", -1, 1),
    ("i32.lt_u", -1, 1),
    ("i32.ge_u", 7, 7),
    ("i32.ne", 3, 4),
]


@pytest.mark.parametrize("op, a, b", I32_BINARY)
def test_i32_binary_matches_wasmtime(op, a, b):
    single(["i32", "i32"], ["i32"], f"local.get 0\nlocal.get 1\n{op}", a, b)


@pytest.mark.parametrize(
    "op, a",
    [("i32.clz", 0x00F00000), ("i32.ctz", 0x00F00000), ("i32.popcnt", -1), ("i32.eqz", 0),
     ("i32.extend8_s", 0x80), ("i32.extend16_s", 0x7FFF)],
)
def test_i32_unary_matches_wasmtime(op, a):
    single(["i32"], ["i32"], f"local.get 0\n{op}", a)


I64_BINARY = [
    ("i64.add", 0xFFFFFFFF, 1, 0x100000000),
    ("i64.sub", 0, 1, -1),
    ("i64.mul", 0x100000001, 0x100000001, 0x200000001),
    ("i64.div_s", -100000000000, 7, -14285714285),
    ("i64.rem_u", -1, 1000, 615),
    ("i64.shl", 1, 40, 1 << 40),
    ("i64.shr_s", -(1 << 40), 38, -4),
    ("i64.rotl", 1 << 63, 1, 1),
    ("i64.and", -1, 0xFF00000000, 0xFF00000000),
]


@pytest.mark.parametrize("op, a, b, expected", I64_BINARY)
def test_i64_binary(op, a, b, expected):
    result = single(["i64", "i64"], ["i64"], f"local.get 0\nlocal.get 1\n{op}", a, b)
    assert result.value == expected


@pytest.mark.parametrize(
    "op, a, b",
    [("i64.lt_s", -1, 0), ("i64.lt_u", -1, 0), ("i64.eq", 1 << 32, 1), ("i64.ge_s", 5, 5)],
)
def test_i64_comparisons(op, a, b):
    single(["i64", "i64"], ["i32"], f"local.get 0\nlocal.get 1\n{op}", a, b)


def test_i64_conversions():
    assert single(["i32"], ["i64"], "local.get 0\ni64.extend_i32_s", -3).value == -3
    assert single(["i32"], ["i64"], "local.get 0\ni64.extend_i32_u", -3).value == 0xFFFFFFFD
    assert single(["i64"], ["i32"], "local.get 0\ni32.wrap_i64", 0x1_8000_0000).value == -2147483648
    assert single(["i64"], ["i64"], "local.get 0\ni64.clz", 1).value == 63


def test_float_bit_operations():
    neg = single(["f32"], ["f32"], "local.get 0\nf32.neg", 1.5)
    assert neg.value == to_bits("f32", -1.5)
    absolute = single(["f64"], ["f64"], "local.get 0\nf64.abs", -2.5)
    assert absolute.value == to_bits("f64", 2.5)


@pytest.mark.parametrize("a, b", [(1.0, 2.0), (2.0, 1.0), (-0.0, 0.0), (NAN, 1.0)])
def test_float_comparisons(a, b):
    single(["f32", "f32"], ["i32"], "local.get 0\nlocal.get 1\nf32.lt", a, b)
    single(["f64", "f64"], ["i32"], "local.get 0\nlocal.get 1\nf64.eq", a, b)


FLOAT_BINARY = [
    ("f64.add", 0.1, 0.2),
    ("f64.add", 1.0, -1.0),
    ("f64.add", -0.0, -0.0),
    ("f64.add", 1e308, 1e308),
    ("f64.add", 5e-324, 5e-324),
    ("f64.add", 1.0, 1.1102230246251565e-16),
    ("f64.add", INF, -INF),
    ("f64.add", NAN, 1.0),
    ("f64.sub", 1.0, 1e-17),
    ("f64.sub", 3.5, 3.5),
    ("f64.sub", 2.2250738585072014e-308, 2.225073858507201e-308),
    ("f64.mul", 1.1, 1.1),
    ("f64.mul", -0.0, 2.0),
    ("f64.mul", 1e-200, 1e-200),
    ("f64.mul", 1e200, -1e200),
    ("f64.mul", 2.2250738585072014e-308, 0.5),
    ("f64.mul", INF, 0.0),
    ("f64.div", 1.0, 3.0),
    ("f64.div", -7.0, 2.0),
    ("f64.div", 1.0, 0.0),
    ("f64.div", 0.0, 0.0),
    ("f64.div", 5e-324, 2.0),
    ("f64.div", 1e-310, 1e10),
    ("f32.add", 0.1, 0.2),
    ("f32.sub", 1.0, 1e-8),
    ("f32.mul", 3.4e38, 2.0),
    ("f32.mul", 1e-30, 1e-15),
    ("f32.div", 1.0, 3.0),
    ("f32.div", -1.0, 0.0),
]


@pytest.mark.parametrize("op, a, b", FLOAT_BINARY)
def test_float_arithmetic_matches_wasmtime(op, a, b):
    value_type = op[:3]
    single([value_type, value_type], [value_type], f"local.get 0\nlocal.get 1\n{op}", a, b)


@pytest.mark.parametrize(
    "op, a",
    [
        ("f64.sqrt", 2.0),
        ("f64.sqrt", 0.25),
        ("f64.sqrt", 1e-310),
        ("f64.sqrt", -0.0),
        ("f64.sqrt", -1.0),
        ("f64.sqrt", INF),
        ("f32.sqrt", 2.0),
        ("f32.sqrt", 1e30),
    ],
)
def test_square_root_matches_wasmtime(op, a):
    value_type = op[:3]
    single([value_type], [value_type], f"local.get 0\n{op}", a)


@pytest.mark.parametrize("mode", ["ceil", "floor", "trunc", "nearest"])
@pytest.mark.parametrize("value_type", ["f32", "f64"])
def test_rounding_matches_wasmtime(mode, value_type):
    pair = Pair(func_wat([value_type], [value_type], f"local.get 0\n{value_type}.{mode}"))
    for value in (2.5, -2.5, 3.5, 0.5, -0.5, 0.7, -0.2, 1e20, -0.0, 8388609.5, INF, NAN):
        pair.call("f", value)


def test_float_results():
    assert as_float("f64", single(["f64", "f64"], ["f64"], "local.get 0\nlocal.get 1\nf64.add", 0.1, 0.2)) == 0.1 + 0.2
    assert as_float("f64", single(["f64"], ["f64"], "local.get 0\nf64.sqrt", 2.0)) == math.sqrt(2.0)
    assert as_float("f64", single(["f64"], ["f64"], "local.get 0\nf64.nearest", 2.5)) == 2.0
    assert math.isnan(as_float("f64", single(["f64", "f64"], ["f64"], "local.get 0\nlocal.get 1\nf64.div", 0.0, 0.0)))


CONVERSIONS = [
    ("f64.convert_i32_s", "i32", -5),
    ("f64.convert_i32_u", "i32", -1),
    ("f32.convert_i32_s", "i32", 16777217),
    ("f32.convert_i32_u", "i32", -1),
    ("f64.convert_i64_s", "i64", (1 << 62) + 1),
    ("f64.convert_i64_s", "i64", -(1 << 63)),
    ("f64.convert_i64_u", "i64", -1),
    ("f32.convert_i64_u", "i64", -1),
    ("f32.convert_i64_s", "i64", -123456789012),
    ("f64.promote_f32", "f32", 0.1),
    ("f64.promote_f32", "f32", 1e-45),
    ("f32.demote_f64", "f64", 0.1),
    ("f32.demote_f64", "f64", 1e300),
    ("f32.demote_f64", "f64", 1e-45),
    ("f32.demote_f64", "f64", -0.0),
]


@pytest.mark.parametrize("op, source, value", CONVERSIONS)
def test_float_conversions_match_wasmtime(op, source, value):
    single([source], [op[:3]], f"local.get 0\n{op}", value)


TRUNCATIONS = [
    ("i32.trunc_f64_s", "f64", 3.9, 3),
    ("i32.trunc_f64_s", "f64", -3.9, -3),
    ("i32.trunc_f64_s", "f64", -2147483648.9, -2147483648),
    ("i32.trunc_f64_s", "f64", 2147483648.0, "integer_overflow"),
    ("i32.trunc_f64_s", "f64", NAN, "invalid_conversion_to_integer"),
    ("i32.trunc_f64_u", "f64", -0.5, 0),
    ("i32.trunc_f64_u", "f64", 4294967295.5, -1),
    ("i32.trunc_f64_u", "f64", -1.0, "integer_overflow"),
    ("i64.trunc_f64_s", "f64", -9.223372036854775808e18, -(1 << 63)),
    ("i64.trunc_f64_s", "f64", 9.223372036854775808e18, "integer_overflow"),
    ("i64.trunc_f64_s", "f64", -INF, "integer_overflow"),
    ("i64.trunc_f64_u", "f64", 1e19, 10000000000000000000 - (1 << 64)),
    ("i64.trunc_f64_u", "f64", 1.8446744073709552e19, "integer_overflow"),
    ("i32.trunc_f32_s", "f32", 1e10, "integer_overflow"),
    ("i32.trunc_f32_u", "f32", NAN, "invalid_conversion_to_integer"),
    ("i64.trunc_f32_u", "f32", 3.5, 3),
]


@pytest.mark.parametrize("op, source, value, expected", TRUNCATIONS)
def test_float_truncation_traps_like_wasmtime(op, source, value, expected):
    result = single([source], [op[:3]], f"local.get 0\n{op}", value)
    if isinstance(expected, str):
        assert result.trap == expected
    else:
        assert result.value == expected


def test_float_loop_accumulates_like_wasmtime():
    body = """
        block
          loop
            local.get 0
            i32.eqz
            br_if 1
            local.get 1
            f64.const 0.1
            f64.add
            local.set 1
            local.get 0
            i32.const 1
            i32.sub
            local.set 0
            br 0
          end
        end
        local.get 1
        f64.const 3
        f64.div
    """
    result = single(["i32"], ["f64"], body, 10, locals=["f64"], budget=4)
    total = 0.0
    for _ in range(10):
        total += 0.1
    assert as_float("f64", result) == total / 3


def test_br_table_clamps_to_default():
    body = """
        block
          block
            block
              local.get 0
              br_table 0 1 2
            end
            i32.const 10
            return
          end
          i32.const 20
          return
        end
        i32.const 30
    """
    pair = Pair(func_wat(["i32"], ["i32"], body))
    assert [pair.call("f", i).value for i in (0, 1, 2, 5, -1)] == [10, 20, 30, 30, 30]


def test_select_tee_and_block_results():
    body = """
        i32.const 100
        block (result i32)
          local.get 0
          local.tee 1
          i32.const 3
          local.get 0
          i32.const 0
          i32.lt_s
          select
          local.get 0
          i32.const 0
          i32.gt_s
          br_if 0
          drop
          i32.const 7
        end
        i32.add
        local.get 1
        i32.add
    """
    pair = Pair(func_wat(["i32"], ["i32"], body, ["i32"]))
    assert pair.call("f", 5).value == 100 + 3 + 5
    assert pair.call("f", 0).value == 100 + 7
    assert pair.call("f", -5).value == 100 + 7 - 5


def test_wide_values_survive_calls():
    pair = Pair(
        """
        (module
          (func $double (param i64) (result i64)
            local.get 0
            i64.const 2
            i64.mul)
          (func (export "triple") (param i64) (result i64)
            local.get 0
            local.get 0
            call $double
            i64.add))
        """
    )
    assert pair.call("triple", 0x100000001).value == 0x300000003


def test_call_depth_is_limited():
    pair = Pair('(module (func (export "forever") call 0))', max_depth=8)
    assert pair.call("forever").trap == "call_stack_exhausted"


def test_call_indirect_traps():
    pair = Pair(
        """
        (module
          (type $get (func (result i32)))
          (table 4 funcref)
          (elem (i32.const 0) 0 1)
          (func (type $get)
            i32.const 11)
          (func (param i32) (result i32)
            local.get 0)
          (func (export "pick") (param i32) (result i32)
            local.get 0
            call_indirect (type $get)))
        """
    )
    assert pair.call("pick", 0).value == 11
    assert pair.call("pick", 1).trap == "indirect_call_type_mismatch"
    assert pair.call("pick", 2).trap == "uninitialized_element"
    assert pair.call("pick", 4).trap == "undefined_element"
    assert pair.call("pick", -1).trap == "undefined_element"
    assert pair.call("pick", 0).value == 11


def test_host_output_and_exit():
    pair = Pair(
        """
        (module
          (import "env" "print" (func $print (param i32)))
          (import "env" "putc" (func $putc (param i32)))
          (import "env" "print_i64" (func $print_i64 (param i64)))
          (import "wasi_snapshot_preview1" "proc_exit" (func $exit (param i32)))
          (func (export "main")
            i32.const 42
            call $print
            i32.const 72
            call $putc
            i32.const 105
            call $putc
            i64.const -5
            call $print_i64
            i32.const 3
            call $exit
            i32.const 99
            call $print))
        """
    )
    result = pair.call("main")
    assert result.exit_code == 3
    assert result.output == [42, -5]
    assert result.text == "Hi"
    assert "42" in pair.vm.chat


def test_globals_persist_between_calls():
    pair = Pair(
        """
        (module
          (global $counter (export "counter") (mut i32) (i32.const 0))
          (func (export "next") (result i32)
            global.get $counter
            i32.const 1
            i32.add
            global.set $counter
            global.get $counter))
        """
    )
    assert [pair.call("next").value for _ in range(3)] == [1, 2, 3]


def test_start_function_runs_at_load():
    pair = Pair(
        """
        (module
          (global $g (mut i64) (i64.const 0))
          (func $start
            i64.const 5000000000
            global.set $g)
          (func (export "get") (result i64)
            global.get $g)
          (start $start))
        """
    )
    assert pair.call("get").value == 5000000000


def test_memory_grow_and_bounds():
    pair = Pair(
        """
        (module
          (memory (export "memory") 1 3)
          (func (export "grow") (param i32) (result i32)
            local.get 0
            memory.grow)
          (func (export "size") (result i32)
            memory.size)
          (func (export "load") (param i32) (result i32)
            local.get 0
            i32.load))
        """
    )
    assert pair.call("load", 65532).value == 0
    assert pair.call("load", 65533).trap == "out_of_bounds_memory_access"
    assert pair.call("grow", 1).value == 1
    assert pair.call("load", 65533).value == 0
    assert pair.call("grow", 5).value == -1
    assert pair.call("grow", 1).value == 2
    assert pair.call("size").value == 3
    assert pair.call("load", -4).trap == "out_of_bounds_memory_access"


TURTLE = """
(module
  (import "env" "turtle_x" (func $x (param i32)))
  (import "env" "turtle_y" (func $y (param i32)))
  (import "env" "turtle_z" (func $z (param i32)))
  (import "env" "turtle_set_block" (func $set (param i32)))
  (import "env" "turtle_get_block" (func $get (result i32)))
  (import "env" "turtle_fill" (func $fill (param i32 i32 i32 i32)))
  (import "env" "turtle_copy" (func $copy))
  (import "env" "turtle_paste" (func $paste))
  (import "env" "turtle_copy_region" (func $copy_region (param i32 i32 i32)))
  (import "env" "turtle_paste_region_masked" (func $paste_masked (param i32 i32 i32)))
  (func (export "goto") (param i32 i32 i32)
    local.get 0
    call $x
    local.get 1
    call $y
    local.get 2
    call $z)
  (func (export "set") (param i32)
    local.get 0
    call $set)
  (func (export "get") (result i32)
    call $get)
  (func (export "fill") (param i32 i32 i32 i32)
    local.get 0
    local.get 1
    local.get 2
    local.get 3
    call $fill)
  (func (export "copy")
    call $copy)
  (func (export "paste")
    call $paste)
  (func (export "copy_region") (param i32 i32 i32)
    local.get 0
    local.get 1
    local.get 2
    call $copy_region)
  (func (export "paste_masked") (param i32 i32 i32)
    local.get 0
    local.get 1
    local.get 2
    call $paste_masked))
"""


def test_turtle_places_blocks():
    pair = Pair(TURTLE)
    pair.call("goto", 1, 2, -3)
    pair.call("set", 1)
    assert pair.call("get").value == 1
    assert pair.vm.block_at(1, 2, -3) == "minecraft:stone"
    assert pair.reference.block_at(1, 2, -3) == "minecraft:stone"
    pair.call("goto", 1, 3, -3)
    assert pair.call("get").value == 0


def test_turtle_fill_spans_negative_offsets():
    pair = Pair(TURTLE)
    pair.call("goto", 2, 0, 0)
    pair.call("fill", 1, 1, 1, -1)
    pair.call("goto", 20, 5, 0)
    pair.call("fill", 3, -2, 0, 1)
    pair.call("fill", 99, 0, 0, 0)
    assert pair.vm.block_at(3, 1, -1) == "minecraft:stone"
    assert pair.vm.block_at(18, 5, 1) == "minecraft:dirt"
    assert pair.call("get").value == 3
    pair.same_blocks((0, -1, -2), (4, 2, 1))
    pair.same_blocks((17, 4, -1), (21, 6, 2))


def test_turtle_copy_and_paste_regions():
    pair = Pair(TURTLE)
    pair.call("goto", 0, 0, 0)
    pair.call("fill", 1, 2, 0, 1)
    pair.call("goto", 1, 0, 0)
    pair.call("set", 3)
    pair.call("goto", 11, 1, 0)
    pair.call("set", 2)

    pair.call("goto", 0, 0, 0)
    pair.call("copy_region", 2, 1, 1)
    pair.call("goto", 10, 0, 0)
    pair.call("paste_masked", 2, 1, 1)
    assert pair.vm.block_at(11, 0, 0) == "minecraft:dirt"
    assert pair.vm.block_at(11, 1, 0) == "minecraft:cobblestone"

    pair.call("goto", 1, 0, 1)
    pair.call("copy")
    pair.call("goto", 5, 5, 5)
    pair.call("paste")
    assert pair.call("get").value == 1

    pair.same_blocks((-1, -1, -1), (13, 6, 6))
    pair.same_blocks((0, 256, 0), (2, 257, 1))


MEMSET = """
(module
  (import "env" "memset" (func $memset (param i32 i32 i32) (result i32)))
  (memory (export "memory") 1)
  (func (export "set") (param i32 i32 i32) (result i32)
    local.get 0
    local.get 1
    local.get 2
    call $memset))
"""


def test_memset_fills_bytes():
    pair = Pair(MEMSET)
    assert pair.call("set", 3, 0xAB, 10).value == 3
    assert pair.vm.read_memory(0, 16) == b"\x00" * 3 + b"\xab" * 10 + b"\x00" * 3
    assert pair.call("set", 5, 0x107, 21).value == 5
    assert pair.call("set", 100, 0xFF, 0).value == 100
    assert pair.call("set", 65530, 1, 6).value == 65530
    assert pair.same_memory(0, 128)
    assert pair.same_memory(65472, 64)


def test_memset_out_of_bounds_traps():
    pair = Pair(MEMSET)
    assert pair.call("set", 65530, 1, 7).trap == "out_of_bounds_memory_access"
    assert pair.call("set", -1, 1, 1).trap == "out_of_bounds_memory_access"
    assert pair.vm.read_memory(65530, 6) == b"\x00" * 6
    assert pair.same_memory(65520, 16)
