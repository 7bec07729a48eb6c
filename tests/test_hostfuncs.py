import json

import pytest

from wasmcraft.compiler import (
    HOST_REGISTRY,
    CompileOptions,
    HostFunction,
    ModuleBuilder,
    UnresolvedImport,
    builtin_host_registry,
    compile_module,
    get_registered_host_functions,
    parse_host_schema,
    register_host_functions,
    reset_host_registry,
    resolve_imports,
)


@pytest.fixture(autouse=True)
def clean_registry():
    reset_host_registry()
    yield
    reset_host_registry()


def importing(module, name, params, results=()):
    b = ModuleBuilder()
    b.import_function(module, name, params, results)
    return b.build()


def test_parse_host_schema():
    hosts = parse_host_schema(
        "# comment\n"
        "env.beep(i32, i64) -> (i32) | say beep; scoreboard players set <result> wasm 0\n"
        "env.nothing() -> ()\n"
    )
    assert [h.key for h in hosts] == ["env.beep", "env.nothing"]
    beep = hosts[0]
    assert beep.params == ("i32", "i64")
    assert beep.results == ("i32",)
    assert beep.commands == ("say beep", "scoreboard players set <result> wasm 0")
    assert hosts[1].commands == ()

    with pytest.raises(ValueError, match="Invalid host function declaration"):
        parse_host_schema("env.broken(i32 ->")


def test_host_function_rejects_bad_types():
    with pytest.raises(ValueError, match="unknown value type"):
        HostFunction("env", "x", ["int"], [], [])
    with pytest.raises(ValueError, match="more than one value"):
        HostFunction("env", "x", [], ["i32", "i32"], [])
    with pytest.raises(ValueError, match="module and a name"):
        HostFunction("", "x", [], [], [])


def test_expand_substitutes_registers():
    host = HostFunction(
        "env",
        "pair",
        ["i64", "i32"],
        ["i64"],
        [
            "scoreboard players operation <result> wasm = <arg0> wasm",
            "scoreboard players operation <resulth> wasm = <arg0h> wasm",
            "data modify storage <ns>:io last set value 0",
            "return run function <ns>:rt/noop",
        ],
    )
    lines = host.expand("demo", ["%s0", "%s1"], "%s0")
    assert lines == [
        "scoreboard players operation %s0 wasm = %s0 wasm",
        "scoreboard players operation %s0h wasm = %s0h wasm",
        "data modify storage demo:io last set value 0",
        "return run function demo:rt/noop",
    ]
    assert host.terminal


def test_register_from_json_and_duplicates():
    spec = json.dumps(
        {"hosts": [{"module": "env", "name": "ping", "params": ["i32"], "commands": ["say ping"]}]}
    )
    register_host_functions(spec)
    assert "env.ping" in get_registered_host_functions()

    with pytest.raises(ValueError, match="Duplicate host function env.ping"):
        register_host_functions("env.ping(i32) -> () | say pong")
    register_host_functions("env.ping(i32) -> () | say pong", replace=True)
    assert HOST_REGISTRY["env.ping"].commands == ("say pong",)

    reset_host_registry()
    assert "env.ping" not in HOST_REGISTRY
    assert "env.print" in HOST_REGISTRY


def test_round_trip_through_dict():
    host = HOST_REGISTRY["env.print"]
    assert HostFunction.from_dict(host.to_dict()) == host
    with pytest.raises(TypeError):
        HostFunction.from_dict(["env", "print"])


def test_resolve_imports():
    bound = resolve_imports(importing("env", "print", ["i32"]))
    assert bound[0].key == "env.print"

    with pytest.raises(UnresolvedImport, match="no such host function") as info:
        resolve_imports(importing("env", "missing", []))
    assert info.value.name == "missing"

    with pytest.raises(UnresolvedImport, match="host function has signature"):
        resolve_imports(importing("env", "print", ["i64"]))

    custom = {"env.missing": HostFunction("env", "missing", [], [], ["say hi"])}
    assert resolve_imports(importing("env", "missing", []), custom)[0].commands == ("say hi",)


def test_registered_hosts_do_not_leak_into_default_compilation():
    register_host_functions("env.ping(i32) -> () | say ping")
    register_host_functions("env.print(i32) -> () | say replaced", replace=True)

    bound = resolve_imports(importing("env", "print", ["i32"]))
    assert bound[0] == builtin_host_registry()["env.print"]
    with pytest.raises(UnresolvedImport, match="no such host function"):
        resolve_imports(importing("env", "ping", ["i32"]))

    registered = resolve_imports(importing("env", "ping", ["i32"]), get_registered_host_functions())
    assert registered[0].commands == ("say ping",)

    b = ModuleBuilder()
    b.import_function("env", "print", ["i32"])
    b.add_function([], [], "i32.const 4\ncall 0", export="go")
    commands = compile_module(b.build(), CompileOptions(budget=None))["f1/b0"].commands
    assert "say replaced" not in commands
    assert any(c.startswith("tellraw @a") for c in commands)


def test_region_and_memset_hosts_call_the_runtime():
    registry = builtin_host_registry()
    for name in ("turtle_fill", "turtle_copy", "turtle_paste", "turtle_copy_region",
                 "turtle_paste_region_masked", "memset"):
        assert f"env.{name}" in registry
    assert registry["env.turtle_fill"].params == ("i32", "i32", "i32", "i32")
    assert registry["env.memset"].results == ("i32",)

    b = ModuleBuilder()
    b.import_function("env", "turtle_fill", ["i32", "i32", "i32", "i32"])
    b.import_function("env", "turtle_paste_region_masked", ["i32", "i32", "i32"])
    b.import_function("env", "memset", ["i32", "i32", "i32"], ["i32"])
    b.add_memory(1)
    b.add_function(
        [],
        [],
        """
        i32.const 1
        i32.const 2
        i32.const 0
        i32.const -3
        call 0
        i32.const 1
        i32.const 1
        i32.const 1
        call 1
        i32.const 0
        i32.const 7
        i32.const 16
        call 2
        drop
        """,
        export="go",
    )
    assembled = compile_module(b.build(), CompileOptions(budget=None))
    commands = [c for name in assembled.names("f3/") for c in assembled[name].commands]
    assert "function wasm:rt/turtle/fill" in commands
    assert "function wasm:rt/turtle/paste_masked" in commands
    assert "function wasm:rt/mem/fill" in commands
    for name in ("rt/turtle/fill", "rt/turtle/copy", "rt/turtle/paste", "rt/turtle/paste_masked", "rt/mem/fill"):
        assert name in assembled
