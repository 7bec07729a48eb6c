import pytest

from wasmcraft.compiler import (
    Instr,
    ModuleBuilder,
    UnsupportedFeature,
    ValidationError,
    decode_module,
    encode_module,
    parse_instructions,
    validate_module,
)


def sample_builder():
    b = ModuleBuilder()
    b.import_function("env", "print", ["i32"])
    b.add_memory(1, 2, export="memory")
    b.add_data(16, b"wasm")
    b.add_global("i32", 7, mutable=True, export="counter")
    b.add_global("i64", -3)
    b.add_function(
        ["i32", "i32"],
        ["i32"],
        """
        local.get 0
        local.get 1
        i32.add
        """,
        export="add",
        name="add",
    )
    b.add_function(
        ["i32"],
        ["i32"],
        """
        block i32
          local.get 0
          local.get 0
          br_table 0 0 0
        end
        i32.load8_u offset=3
        """,
        export="peek",
    )
    b.add_table(2)
    b.add_elements(0, [1, 2])
    return b


def test_round_trip_is_structural_and_byte_exact():
    b = sample_builder()
    data = b.encode()
    module = decode_module(data)

    assert module == b.build()
    assert encode_module(module) == data
    assert module.function_name(1) == "add"
    assert module.function_name(0) == "env.print"
    assert module.export_map()["peek"].index == 2


def test_decoder_keeps_immediates():
    module = decode_module(sample_builder().encode())
    body = module.function(2).body
    assert body[0] == Instr("block", "i32")
    assert body[3] == Instr("br_table", ((0, 0), 0))
    assert body[5] == Instr("i32.load8_u", (0, 3))
    assert body[-1].op == "end"
    assert module.data[0].data == b"wasm"
    assert module.globals[1].init == [Instr("i64.const", -3)]


def test_bad_magic_and_version_are_rejected():
    with pytest.raises(ValidationError, match="magic"):
        decode_module(b"\x00wsm\x01\x00\x00\x00")
    with pytest.raises(ValidationError, match="version"):
        decode_module(b"\x00asm\x02\x00\x00\x00")


def test_truncated_module_reports_offset():
    data = sample_builder().encode()
    with pytest.raises(ValidationError) as info:
        decode_module(data[:-5])
    assert info.value.offset is not None or info.value.section is not None


def test_out_of_order_sections_are_rejected():
    header = b"\x00asm\x01\x00\x00\x00"
    type_section = b"\x01\x04\x01\x60\x00\x00"
    function_section = b"\x03\x02\x01\x00"
    with pytest.raises(ValidationError, match="after last section"):
        decode_module(header + function_section + type_section)


def test_simd_prefix_is_unsupported():
    header = b"\x00asm\x01\x00\x00\x00"
    types = b"\x01\x04\x01\x60\x00\x00"
    funcs = b"\x03\x02\x01\x00"
    # v128.const prefix inside the body
    body = b"\x00\xfd\x0c\x0b"
    code = b"\x0a" + bytes([len(body) + 2, 1, len(body)]) + body
    with pytest.raises(UnsupportedFeature) as info:
        decode_module(header + types + funcs + code)
    assert info.value.feature == "simd"


def test_float_arithmetic_validates():
    b = ModuleBuilder()
    b.add_function(["f32", "f64"], ["i64"], "local.get 0\nf64.promote_f32\nlocal.get 1\nf64.mul\ni64.trunc_f64_s")
    module = validate_module(b.build())
    assert [instr.height for instr in module.functions[0].body[:5]] == [0, 1, 1, 2, 1]

    b = ModuleBuilder()
    b.add_function(["f32"], ["f32"], "local.get 0\nf64.sqrt")
    with pytest.raises(ValidationError, match="type mismatch"):
        validate_module(b.build())


def test_validator_reports_type_mismatch():
    b = ModuleBuilder()
    b.add_function(["i64"], ["i32"], "local.get 0\ni32.const 1\ni32.add")
    with pytest.raises(ValidationError, match="type mismatch"):
        validate_module(b.build())


def test_validator_rejects_immutable_global_write():
    b = ModuleBuilder()
    b.add_global("i32", 1)
    b.add_function([], [], "i32.const 2\nglobal.set 0")
    with pytest.raises(ValidationError, match="immutable"):
        validate_module(b.build())


def test_validator_annotates_stack_heights():
    b = ModuleBuilder()
    b.add_function(["i32"], ["i32"], "local.get 0\ni32.const 2\ni32.mul")
    module = validate_module(b.build())
    heights = [instr.height for instr in module.function(0).body]
    assert heights == [0, 1, 2, 1]


def test_text_form_parses_memory_arguments():
    instrs = parse_instructions("i32.store offset=8 align=1\ni64.load\n;; comment only\n")
    assert instrs == [Instr("i32.store", (0, 8)), Instr("i64.load", (3, 0))]
