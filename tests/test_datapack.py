import json

import pytest

from wasmcraft.compiler import CommandVM, CompileOptions, ModuleBuilder, compile_module
from wasmcraft.datapack import (
    SIGNATURE_FILE,
    check_digest,
    diff_datapacks,
    function_file,
    hash_datapack,
    load_datapack,
    sign_datapack,
    verify_datapack,
)


def counter_module(step=1):
    b = ModuleBuilder()
    b.add_memory(1)
    b.add_data(0, b"hi")
    b.add_global("i32", 0, mutable=True)
    b.add_function(
        [],
        ["i32"],
        f"global.get 0\ni32.const {step}\ni32.add\nglobal.set 0\nglobal.get 0",
        export="bump",
    )
    return b.build()


def write_pack(directory, step=1, **options):
    assembled = compile_module(counter_module(step), CompileOptions(**options))
    assembled.write(directory)
    return assembled


def test_write_layout_and_tags(tmp_path):
    assembled = write_pack(tmp_path / "pack")
    root = tmp_path / "pack"

    meta = json.loads((root / "pack.mcmeta").read_text())
    assert "pack_format" in meta["pack"]
    load = json.loads((root / "data/minecraft/tags/function/load.json").read_text())
    tick = json.loads((root / "data/minecraft/tags/function/tick.json").read_text())
    assert load == {"values": ["wasm:init"]}
    assert tick == {"values": ["wasm:rt/tick"]}

    block = function_file(root, "wasm:f0/b0")
    assert block.read_text().splitlines() == assembled["f0/b0"].commands
    manifest = json.loads((root / "manifest.json").read_text())
    assert manifest["digest"] == assembled.digest


def test_no_tick_tag_without_budget(tmp_path):
    write_pack(tmp_path / "pack", budget=None)
    assert not (tmp_path / "pack/data/minecraft/tags/function/tick.json").exists()
    assert load_datapack(tmp_path / "pack").tick == []


def test_load_round_trip_runs_in_vm(tmp_path):
    assembled = write_pack(tmp_path / "pack")
    pack = load_datapack(tmp_path / "pack")

    assert pack.functions.keys() == assembled.functions.keys()
    assert check_digest(pack)
    vm = CommandVM(pack)
    assert [vm.call("bump").value for _ in range(3)] == [1, 2, 3]
    assert vm.read_memory(0, 2) == b"hi"


def test_tampering_breaks_digest(tmp_path):
    write_pack(tmp_path / "pack")
    target = function_file(tmp_path / "pack", "wasm:f0/b0")
    target.write_text(target.read_text() + "say tampered\n")
    assert not check_digest(load_datapack(tmp_path / "pack"))


def test_load_rejects_foreign_manifest(tmp_path):
    (tmp_path / "manifest.json").write_text(json.dumps({"format": "other"}))
    with pytest.raises(ValueError, match="not a wasmcraft datapack"):
        load_datapack(tmp_path)


def test_hash_matches_manifest(tmp_path, capsys):
    assembled = write_pack(tmp_path / "pack")
    assert hash_datapack(tmp_path / "pack") == assembled.digest
    assert f"= {assembled.digest}" in capsys.readouterr().out


def test_diff_reports_changed_functions(tmp_path, capsys):
    write_pack(tmp_path / "a")
    write_pack(tmp_path / "b")
    write_pack(tmp_path / "c", step=2)

    assert diff_datapacks(tmp_path / "a", tmp_path / "b") == []
    assert "identical" in capsys.readouterr().out

    differences = diff_datapacks(tmp_path / "a", tmp_path / "c")
    assert ("changed", "f0/b0") in differences
    assert all(kind != "exports" for kind, _ in differences)


def test_sign_and_verify(tmp_path, monkeypatch):
    pytest.importorskip("cryptography")
    monkeypatch.chdir(tmp_path)
    write_pack(tmp_path / "pack")

    signature = sign_datapack(tmp_path / "pack")
    assert (tmp_path / "pack" / SIGNATURE_FILE).read_text().strip() == signature
    assert verify_datapack(tmp_path / "pack")

    target = function_file(tmp_path / "pack", "wasm:f0/b0")
    target.write_text(target.read_text() + "say tampered\n")
    assert not verify_datapack(tmp_path / "pack")


def test_verify_unsigned_pack(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    write_pack(tmp_path / "pack")
    assert not verify_datapack(tmp_path / "pack")
