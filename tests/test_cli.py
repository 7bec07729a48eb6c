import json

import pytest

from wasmcraft.cli import main, parse_args
from wasmcraft.compiler import ModuleBuilder


def write_module(path):
    b = ModuleBuilder()
    b.import_function("env", "print", ["i32"])
    b.add_function(
        ["i32"],
        ["i32"],
        """
        local.get 0
        call 0
        i32.const 0
        local.set 1
        block
          loop
            local.get 0
            i32.eqz
            br_if 1
            local.get 1
            local.get 0
            i32.add
            local.set 1
            local.get 0
            i32.const 1
            i32.sub
            local.set 0
            br 0
          end
        end
        local.get 1
        """,
        locals=["i32"],
        export="Sum",
    )
    path.write_bytes(b.encode())
    return path


def test_parse_args_defaults():
    params = parse_args(["prog.wasm"])
    assert params.input == "prog.wasm"
    assert params.namespace == "wasm"
    assert params.budget == 32
    assert params.max_depth == 256
    assert not params.no_budget
    assert params.run is None


def test_compile_writes_datapack(tmp_path, capsys):
    source = write_module(tmp_path / "sum.wasm")
    assert main([str(source), "--namespace", "demo", "--no-budget"]) == 0

    out = capsys.readouterr().out
    assert "✓ Compiled" in out
    manifest = json.loads((tmp_path / "sum_datapack" / "manifest.json").read_text())
    assert manifest["namespace"] == "demo"
    assert manifest["options"]["budget"] is None
    assert manifest["exports"]["Sum"]["function"] == "demo:export/sum"


def test_run_compares_with_wasmtime(tmp_path, capsys):
    pytest.importorskip("wasmtime")
    source = write_module(tmp_path / "sum.wasm")
    out_dir = tmp_path / "out"
    code = main([str(source), "-o", str(out_dir), "--budget", "4", "--run", "Sum", "10", "--interpret"])
    assert code == 0

    out = capsys.readouterr().out
    assert "✓ datapack" in out
    assert "[55]" in out
    assert "out: 10" in out
    assert "✓ wasmtime: [55]" in out
    assert "✓ Results agree" in out
    assert (out_dir / "manifest.json").exists()


def test_run_unknown_export_fails(tmp_path, capsys):
    source = write_module(tmp_path / "sum.wasm")
    assert main([str(source), "-o", str(tmp_path / "out"), "--run", "missing"]) == 1
    assert "no exported function" in capsys.readouterr().out


def test_dump_cfg(tmp_path, capsys):
    source = write_module(tmp_path / "sum.wasm")
    assert main([str(source), "-o", str(tmp_path / "out"), "--dump-cfg"]) == 0
    out = capsys.readouterr().out
    assert "f1 Sum (i32) -> (i32)" in out
    assert "(back edge)" in out


def test_invalid_module_reports_error(tmp_path, capsys):
    source = tmp_path / "broken.wasm"
    source.write_bytes(b"not wasm at all")
    assert main([str(source)]) == 1
    assert "✗ magic header not detected" in capsys.readouterr().out


def test_missing_input(capsys):
    assert main([]) == 2
    assert "No input module" in capsys.readouterr().out


def test_hash_and_diff(tmp_path, capsys):
    source = write_module(tmp_path / "sum.wasm")
    main([str(source), "-o", str(tmp_path / "a")])
    main([str(source), "-o", str(tmp_path / "b")])
    main([str(source), "-o", str(tmp_path / "c"), "--budget", "5"])
    digest = json.loads((tmp_path / "a" / "manifest.json").read_text())["digest"]
    capsys.readouterr()

    assert main(["--hash", str(tmp_path / "a")]) == 0
    assert digest in capsys.readouterr().out
    assert main(["--diff", str(tmp_path / "a"), str(tmp_path / "b")]) == 0
    assert main(["--diff", str(tmp_path / "a"), str(tmp_path / "c")]) == 1


def test_custom_hosts_file(tmp_path, capsys):
    hosts = tmp_path / "hosts.txt"
    hosts.write_text("# extra primitives\nenv.ping(i32) -> () | say ping\n")
    b = ModuleBuilder()
    b.import_function("env", "ping", ["i32"])
    b.add_function([], [], "i32.const 1\ncall 0", export="go")
    source = tmp_path / "ping.wasm"
    source.write_bytes(b.encode())

    assert main([str(source), "-o", str(tmp_path / "out")]) == 1
    assert "env.ping" in capsys.readouterr().out
    assert main([str(source), "-o", str(tmp_path / "out"), "--hosts", str(hosts)]) == 0
    block = (tmp_path / "out" / "data" / "wasm" / "function" / "f1" / "b0.mcfunction").read_text()
    assert "say ping" in block.splitlines()


def test_custom_hosts_file_in_json(tmp_path, capsys):
    hosts = tmp_path / "hosts.json"
    hosts.write_text(
        json.dumps(
            {
                "hosts": [
                    {
                        "module": "env",
                        "name": "ping",
                        "params": ["i32"],
                        "commands": ["say ping", "scoreboard players operation %last wasm = <arg0> wasm"],
                    }
                ]
            }
        )
    )
    b = ModuleBuilder()
    b.import_function("env", "ping", ["i32"])
    b.add_function([], [], "i32.const 1\ncall 0", export="go")
    source = tmp_path / "ping.wasm"
    source.write_bytes(b.encode())

    assert main([str(source), "-o", str(tmp_path / "out"), "--hosts", str(hosts)]) == 0
    assert "✓ Compiled" in capsys.readouterr().out
    block = (tmp_path / "out" / "data" / "wasm" / "function" / "f1" / "b0.mcfunction").read_text()
    assert "say ping" in block.splitlines()
    assert "scoreboard players operation %last wasm = %s0 wasm" in block.splitlines()
