import re

import pytest

from wasmcraft.compiler import (
    CompileOptions,
    EmitError,
    HostFunction,
    ModuleBuilder,
    ResourceLimitExceeded,
    UnresolvedImport,
    VirtualStack,
    build_cfg,
    compile_module,
    compile_wasm,
    decode_module,
    get_registered_host_functions,
    lower_floats,
    required_helpers,
    sanitize_export_name,
    validate_module,
)

FUNCTION_REF = re.compile(r"function ([a-z0-9_.\-]+:[a-z0-9_.\-/]+)")


def loop_module():
    b = ModuleBuilder()
    b.add_function(
        ["i32"],
        ["i32"],
        """
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
        """,
        locals=["i32", "i32"],
        export="sum",
    )
    b.add_function(["i32", "i32"], ["i32"], "local.get 0\nlocal.get 1\ni32.div_s", export="div")
    b.add_function(["i64"], ["i64"], "local.get 0\ni64.const 3\ni64.mul", export="triple")
    return b


def test_one_command_function_per_block():
    b = ModuleBuilder()
    b.add_function(["i32", "i32"], ["i32"], "local.get 0\nlocal.get 1\ni32.add", export="add")
    module = validate_module(b.build())
    assembled = compile_module(module)

    assert len(assembled.names("f0/")) == len(build_cfg(module, 0)) == 1
    assert "f0/b0" in assembled
    assert assembled["f0/b0"].commands[-1].startswith("return run function wasm:rt/return")
    assert assembled.export_function("add") == "wasm:export/add"


def test_loop_blocks_and_budget_check():
    module = validate_module(loop_module().build())
    assembled = compile_module(module, CompileOptions(budget=8))

    assert len(assembled.names("f0/")) == len(build_cfg(module, 0))
    back_edge_block = assembled["f0/b3"].commands
    assert "scoreboard players remove %budget wasm 1" in back_edge_block
    assert any('resume set value {k:"wasm:f0/b1"}' in c for c in back_edge_block)
    assert any("schedule function wasm:rt/resume 1t replace" in c for c in back_edge_block)
    assert "rt/tick" in assembled
    assert "schedule clear wasm:rt/resume" in assembled["rt/reset"].commands
    assert assembled.tick == ["wasm:rt/tick"]


def test_no_budget_drops_tick_function():
    module = validate_module(loop_module().build())
    assembled = compile_module(module, CompileOptions(budget=None))

    assert "rt/tick" not in assembled
    assert assembled.manifest["tick"] is None
    assert not any("%budget" in c for name in assembled.names("f0/") for c in assembled[name].commands)


def test_compilation_is_deterministic():
    data = loop_module().encode()
    first = compile_wasm(data)
    second = compile_wasm(data)
    parallel = compile_wasm(data, CompileOptions(jobs=4))

    assert first.digest == second.digest == parallel.digest
    assert first.functions == parallel.functions
    assert list(first.functions) == sorted(first.functions)


def test_manifest_describes_exports_and_options():
    assembled = compile_module(loop_module().build(), CompileOptions(namespace="demo", max_depth=64))
    manifest = assembled.manifest

    assert manifest["format"] == "wasmcraft-manifest/1"
    assert manifest["namespace"] == "demo"
    assert manifest["objective"] == "wasm"
    assert manifest["init"] == "demo:init"
    assert manifest["exports"]["triple"] == {
        "function": "demo:export/triple",
        "index": 2,
        "params": ["i64"],
        "results": ["i64"],
    }
    assert manifest["traps"]["divide_by_zero"] == 2
    assert manifest["options"] == {"namespace": "demo", "budget": 32, "max_depth": 64}
    assert manifest["functions"] == len(assembled)
    assert manifest["commands"] == assembled.command_count
    assert manifest["memory"] is None


def test_every_function_reference_resolves():
    b = ModuleBuilder()
    b.import_function("env", "print", ["i32"])
    b.add_memory(1)
    b.add_function([], ["i32"], "i32.const 5")
    b.add_function(
        ["i32"],
        ["i32"],
        """
        local.get 0
        i32.load16_s offset=2
        call 0
        local.get 0
        call_indirect 1
        call 1
        i32.add
        i32.const 3
        i32.rem_u
        """,
        export="mixed",
    )
    b.add_table(1)
    b.add_elements(0, [1])
    assembled = compile_module(validate_module(b.build()))
    assert "rt/icall/t0_1" in assembled
    assert "rt/table/t0" in assembled
    for func in assembled.functions.values():
        for command in func.commands:
            assert "\n" not in command
            for target in FUNCTION_REF.findall(command):
                assert target in assembled.functions, f"{func.name}: {command}"


def test_init_sets_up_objective_memory_and_data():
    b = ModuleBuilder()
    b.add_memory(1, 4)
    b.add_data(4, b"\x01\x02\x03\x04")
    b.add_global("i64", -2, mutable=True)
    b.add_function([], ["i32"], "i32.const 4\ni32.load", export="word")
    assembled = compile_module(b.build())
    init = assembled["init"].commands

    assert init[0] == "scoreboard objectives add wasm dummy"
    assert "data modify storage wasm:memory pages[0][1] set value 67305985" in init
    assert "scoreboard players set %memsize wasm 1" in init
    assert "scoreboard players set %memmax wasm 4" in init
    assert "scoreboard players set %g0 wasm -2" in init
    assert "scoreboard players set %g0h wasm -1" in init
    assert assembled.manifest["memory"] == {"pages": 1, "max_pages": 4}


def test_unresolved_imports_are_reported():
    b = ModuleBuilder()
    b.import_function("env", "launch_rockets", ["i32"])
    b.add_function([], [], "i32.const 1\ncall 0", export="go")
    with pytest.raises(UnresolvedImport, match="env.launch_rockets"):
        compile_module(b.build())

    b = ModuleBuilder()
    b.import_function("env", "print", ["i64"])
    b.add_function([], [], "i64.const 1\ncall 0", export="go")
    with pytest.raises(UnresolvedImport, match="signature"):
        compile_module(b.build())


def test_custom_host_function_is_inlined():
    hosts = get_registered_host_functions()
    beep = HostFunction("env", "beep", ["i32"], [], ["say beep", "scoreboard players operation %last wasm = <arg0> wasm"])
    hosts[beep.key] = beep

    b = ModuleBuilder()
    b.import_function("env", "beep", ["i32"])
    b.add_function(["i32"], [], "local.get 0\ncall 0", export="go")
    assembled = compile_module(b.build(), hosts=hosts)

    commands = [c for name in assembled.names("f1/") for c in assembled[name].commands]
    assert "say beep" in commands
    assert "scoreboard players operation %last wasm = %s0 wasm" in commands


def test_memory_beyond_addressable_pages_is_rejected():
    b = ModuleBuilder()
    b.add_memory(40000)
    b.add_function([], [], "nop")
    with pytest.raises(ResourceLimitExceeded) as info:
        compile_module(b.build())
    assert info.value.limit == 32767


def test_invalid_namespace_is_rejected():
    b = ModuleBuilder()
    b.add_function([], [], "nop")
    with pytest.raises(EmitError, match="namespace"):
        compile_module(b.build(), CompileOptions(namespace="Bad Namespace"))
    with pytest.raises(ValueError):
        CompileOptions(budget=0)


def test_overlong_function_names_are_rejected():
    b = ModuleBuilder()
    b.add_function([], [], "nop", export="go")
    with pytest.raises(EmitError, match="too long"):
        compile_module(b.build(), CompileOptions(namespace="n" * 300))
    assembled = compile_module(b.build(), CompileOptions(namespace="n" * 200))
    assert all(len(name) <= 256 for name in assembled.functions)


def test_virtual_stack_tracks_heights_and_constants():
    stack = VirtualStack(2)
    assert stack.height == 2
    assert stack.peek().type is None
    assert stack.push("i32", 7) == 2
    assert stack.peek().const == 7
    assert stack.pop().slot == 2
    stack.truncate(4)
    assert [v.slot for v in stack.values] == [0, 1, 2, 3]
    stack.truncate(1)
    assert stack.pop().slot == 0
    with pytest.raises(EmitError, match="underflow"):
        stack.pop()


def test_export_names_are_sanitized_and_unique():
    assert sanitize_export_name("Add Numbers!") == "add_numbers"
    assert sanitize_export_name("...") == "export"

    b = ModuleBuilder()
    first = b.add_function([], [], "nop")
    second = b.add_function([], [], "nop")
    b.export("Run", "func", first)
    b.export("run", "func", second)
    assembled = compile_module(b.build())

    exports = assembled.manifest["exports"]
    assert exports["Run"]["function"] == "wasm:export/run"
    assert exports["run"]["function"] == "wasm:export/run_2"


def test_dispatcher_emitted_for_call_indirect():
    b = ModuleBuilder()
    b.add_function([], ["i32"], "i32.const 11")
    b.add_function([], ["i32"], "i32.const 22")
    b.add_function(["i32"], ["i32"], "local.get 0\ncall_indirect 0", export="pick")
    b.add_table(2)
    b.add_elements(0, [0, 1])
    module = decode_module(b.encode())
    assembled = compile_module(module)

    assert "rt/icall/t0_0" in assembled
    assert "data modify storage wasm:table t0 set value [I;0,1]" in assembled["init"].commands


def test_float_arithmetic_becomes_helper_calls():
    b = ModuleBuilder()
    b.add_function(["f32", "f32"], ["f32"], "local.get 0\nlocal.get 1\nf32.sub", export="sub")
    b.add_function(["f64"], ["i32"], "local.get 0\ni32.trunc_f64_u", export="trunc")
    module = validate_module(b.build())
    lowered = lower_floats(module)

    assert lowered is not module
    assert [instr.op for instr in module.functions[0].body] == ["local.get", "local.get", "f32.sub", "end"]
    ops = [instr.op for instr in lowered.functions[0].body]
    assert ops == ["local.get", "local.get", "f32.neg", "call", "end"]
    helpers = required_helpers({"f32.sub", "i32.trunc_f64_u"})
    assert helpers[0] == "shift_right_jam"
    assert {"f32_add", "f64_add", "f32_promote", "f64_demote", "i32_trunc_f64_u"} <= set(helpers)
    assert len(lowered.functions) == 2 + len(helpers)
    call = lowered.functions[0].body[3]
    assert lowered.function_name(call.imm) == "softfloat.f32_add"
    assert lowered.names[2 + helpers.index("i32_trunc_f64_u")] == "softfloat.i32_trunc_f64_u"
    trunc = lowered.functions[2 + helpers.index("i32_trunc_f64_u")]
    kinds = {instr.imm for instr in trunc.body if instr.op == "unreachable"}
    assert kinds == {"integer_overflow", "invalid_conversion_to_integer"}

    assembled = compile_module(module)
    traps = [c for name in assembled.names() for c in assembled[name].commands if "rt/trap/invalid_conversion" in c]
    assert traps
    assert not any(instr.op.startswith("f64.") for func in lowered.functions for instr in func.body
                   if instr.op not in ("f64.reinterpret_i64", "f64.const", "f64.neg"))


def test_integer_modules_are_not_rewritten():
    module = validate_module(loop_module().build())
    assert lower_floats(module) is module
