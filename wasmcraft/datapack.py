"""Datapack serialization helpers.

A compiled module is written as an ordinary datapack::

    <out>/pack.mcmeta
    <out>/manifest.json
    <out>/data/<ns>/function/<path>.mcfunction
    <out>/data/minecraft/tags/function/load.json
    <out>/data/minecraft/tags/function/tick.json

The manifest records the exports, trap codes, options and a digest of every
function body.  Nothing time-dependent is written, so the same module always
produces byte-identical files.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from .compiler.assembler import functions_digest
from .compiler.emitter import CommandFunction
from .constants import MANIFEST_FILE, MANIFEST_FORMAT, PACK_FORMAT
from . import crypto as _crypto

SIGNATURE_FILE = "manifest.sig"


@dataclass
class LoadedDatapack:
    """Functions and manifest read back from disk."""

    namespace: str
    functions: dict
    manifest: dict
    load: list
    tick: list

    def __getitem__(self, name):
        if ":" not in name:
            name = f"{self.namespace}:{name}"
        return self.functions[name]

    def __contains__(self, name):
        if ":" not in name:
            name = f"{self.namespace}:{name}"
        return name in self.functions

    def __len__(self):
        return len(self.functions)


def _write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")


def function_file(root, name):
    namespace, path = name.split(":", 1)
    return Path(root) / "data" / namespace / "function" / f"{path}.mcfunction"


def write_datapack(assembled, directory):
    """Persist an assembled module as a datapack directory."""

    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)
    _write_json(
        root / "pack.mcmeta",
        {
            "pack": {
                "pack_format": PACK_FORMAT,
                "description": f"WebAssembly module ({assembled.namespace})",
            }
        },
    )
    for name, func in assembled.functions.items():
        target = function_file(root, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="\n") as f:
            f.write(func.text())
    tags = root / "data" / "minecraft" / "tags" / "function"
    _write_json(tags / "load.json", {"values": list(assembled.load)})
    if assembled.tick:
        _write_json(tags / "tick.json", {"values": list(assembled.tick)})
    _write_json(root / MANIFEST_FILE, assembled.manifest)
    print(f"  ✓ Datapack written → {root} ({len(assembled.functions)} functions)")
    return root


def _read_tag(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return list(json.load(f).get("values", []))
    except FileNotFoundError:
        return []


def load_datapack(directory):
    """Load a datapack written by :func:`write_datapack`."""

    root = Path(directory)
    with open(root / MANIFEST_FILE, "r", encoding="utf-8") as f:
        manifest = json.load(f)
    if manifest.get("format") != MANIFEST_FORMAT:
        raise ValueError(f"{root} is not a wasmcraft datapack (format {manifest.get('format')!r})")
    namespace = manifest["namespace"]
    base = root / "data" / namespace / "function"
    functions = {}
    for dirpath, _, filenames in os.walk(base):
        for filename in filenames:
            if not filename.endswith(".mcfunction"):
                continue
            full = Path(dirpath) / filename
            path = full.relative_to(base).with_suffix("").as_posix()
            with open(full, "r", encoding="utf-8") as f:
                commands = f.read().splitlines()
            name = f"{namespace}:{path}"
            functions[name] = CommandFunction(name, commands)
    tags = root / "data" / "minecraft" / "tags" / "function"
    return LoadedDatapack(
        namespace,
        dict(sorted(functions.items())),
        manifest,
        _read_tag(tags / "load.json"),
        _read_tag(tags / "tick.json"),
    )


def check_digest(pack):
    """Whether the function bodies still match the manifest digest."""
    return functions_digest(pack.functions) == pack.manifest.get("digest")


def hash_datapack(directory):
    """Recompute the content digest of a datapack on disk."""
    pack = load_datapack(directory)
    digest = functions_digest(pack.functions)
    print(f"SHA256({directory}) = {digest}")
    return digest


def diff_datapacks(dir_a, dir_b):
    """Compare two datapacks and report which functions differ."""
    a = load_datapack(dir_a)
    b = load_datapack(dir_b)
    ha = functions_digest(a.functions)
    hb = functions_digest(b.functions)
    if ha == hb and a.manifest.get("exports") == b.manifest.get("exports"):
        print(f"✓ Datapacks are identical ({ha})")
        return []

    print(f"✗ Datapacks differ\n  {dir_a}: {ha}\n  {dir_b}: {hb}")
    differences = []
    paths_a = {func.path: func for func in a.functions.values()}
    paths_b = {func.path: func for func in b.functions.values()}
    for path in sorted(set(paths_a) | set(paths_b)):
        if path not in paths_b:
            differences.append(("removed", path))
            print(f"  - {path}")
        elif path not in paths_a:
            differences.append(("added", path))
            print(f"  + {path}")
        elif paths_a[path].commands != paths_b[path].commands:
            differences.append(("changed", path))
            print(f"  • {path} ({len(paths_a[path])} vs {len(paths_b[path])} commands)")
    exports_a = a.manifest.get("exports", {})
    exports_b = b.manifest.get("exports", {})
    if exports_a != exports_b:
        differences.append(("exports", sorted(set(exports_a) ^ set(exports_b))))
        print("  • Exported functions differ")
    return differences


def sign_datapack(directory):
    """Sign the manifest digest and store the signature beside the manifest."""
    pack = load_datapack(directory)
    if not check_digest(pack):
        raise ValueError(f"{directory}: function bodies do not match the manifest digest")
    signature = _crypto.sign_hash(pack.manifest["digest"])
    with open(Path(directory) / SIGNATURE_FILE, "w", encoding="utf-8") as f:
        f.write(signature + "\n")
    print(f"  📜 Signed datapack digest → {Path(directory) / SIGNATURE_FILE}")
    return signature


def verify_datapack(directory):
    """Check the stored signature and the function digest of a datapack."""
    pack = load_datapack(directory)
    try:
        with open(Path(directory) / SIGNATURE_FILE, "r", encoding="utf-8") as f:
            signature = f.read().strip()
    except FileNotFoundError:
        print(f"✗ {directory} is not signed")
        return False
    if not check_digest(pack):
        print("✗ Function bodies do not match the manifest digest")
        return False
    if not _crypto.verify_signature(pack.manifest["digest"], signature):
        print("✗ Signature verification failed")
        return False
    print("✓ Signature valid")
    return True


__all__ = [
    "LoadedDatapack",
    "SIGNATURE_FILE",
    "check_digest",
    "diff_datapacks",
    "function_file",
    "hash_datapack",
    "load_datapack",
    "sign_datapack",
    "verify_datapack",
    "write_datapack",
]
