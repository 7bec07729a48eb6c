"""Command-line interface for the wasmcraft compiler."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .analysis import export_graphviz, module_summary, print_cfgs, visualize_cfg
from .compiler.assembler import CompileOptions, compile_module
from .compiler.commandvm import CommandError, CommandVM, bits_to_float
from .compiler.decoder import decode_module
from .compiler.errors import CompileError
from .compiler.hostfuncs import _normalize_host_functions, builtin_host_registry
from .compiler.reference import ReferenceInstance, values_agree
from .compiler.validator import validate_module
from .constants import DEFAULT_BUDGET, DEFAULT_JOBS, DEFAULT_MAX_DEPTH, DEFAULT_NAMESPACE
from .datapack import diff_datapacks, hash_datapack, sign_datapack, verify_datapack


def parse_args(args):
    argp = argparse.ArgumentParser(
        prog="wasmcraft",
        description="Compile WebAssembly modules into Minecraft datapacks",
    )

    argp.add_argument("input", nargs="?", help="WebAssembly binary module (.wasm)")
    argp.add_argument(
        "-o",
        "--output",
        metavar="DIR",
        help="Datapack directory to write (default: <input>_datapack)",
    )
    argp.add_argument("--namespace", default=DEFAULT_NAMESPACE, help="Datapack namespace")
    argp.add_argument(
        "--budget",
        type=int,
        default=DEFAULT_BUDGET,
        help="Basic blocks executed per tick before deferring to the next tick",
    )
    argp.add_argument(
        "--no-budget", action="store_true", help="Never defer execution to a later tick"
    )
    argp.add_argument(
        "--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum call depth"
    )
    argp.add_argument(
        "--jobs", type=int, default=DEFAULT_JOBS, help="Functions compiled in parallel"
    )
    argp.add_argument(
        "--comments", action="store_true", help="Annotate block functions with comments"
    )
    argp.add_argument(
        "--hosts",
        metavar="FILE",
        help=(
            "Extra host functions: JSON, or one "
            "'module.name(params) -> (results) | cmd; cmd' per line"
        ),
    )
    argp.add_argument(
        "--dump-cfg", action="store_true", help="Print the control-flow graph of every function"
    )
    argp.add_argument(
        "--graphviz",
        metavar="DIR",
        help="Export one Graphviz SVG control-flow graph per function into DIR",
    )
    argp.add_argument(
        "--visualize",
        metavar="FUNC",
        help="Render the control-flow graph of a function (index or export name)",
    )
    argp.add_argument(
        "--run",
        nargs="+",
        metavar=("EXPORT", "ARGS"),
        help="Run an exported function in the command simulator",
    )
    argp.add_argument(
        "--interpret",
        action="store_true",
        help="With --run, also run the module on wasmtime and compare",
    )
    argp.add_argument("--hash", metavar="DIR", help="Compute the digest of a datapack")
    argp.add_argument(
        "--diff", nargs=2, metavar=("A", "B"), help="Compare two datapack directories"
    )
    argp.add_argument("--sign", metavar="DIR", help="Sign the manifest digest of a datapack")
    argp.add_argument("--verify", metavar="DIR", help="Verify a signed datapack")
    argp.add_argument("-v", "--verbose", action="count", default=0, help="More logging")

    return argp.parse_args(args)


def _host_registry(path):
    registry = builtin_host_registry()
    if path:
        with open(path, "r", encoding="utf-8") as f:
            for host in _normalize_host_functions(f.read()):
                registry[host.key] = host
    return registry


def _function_index(module, token):
    if token.isdigit():
        return int(token)
    exports = module.export_map()
    if token in exports and exports[token].kind == "func":
        return exports[token].index
    raise ValueError(f"no function named {token!r}")


def _parse_value(value_type, token):
    if value_type in ("f32", "f64"):
        return float(token)
    return int(token, 0)


def _format_value(value_type, value):
    if value_type in ("f32", "f64"):
        return f"{bits_to_float(value_type, value)!r} (bits 0x{value:x})"
    return str(value)


def _print_result(label, result, types):
    if result.trap:
        print(f"  ✗ {label}: trap {result.trap}")
    elif result.exit_code is not None:
        print(f"  ✓ {label}: exited with code {result.exit_code}")
    else:
        values = ", ".join(_format_value(t, v) for t, v in zip(types, result.results))
        print(f"  ✓ {label}: [{values}]")
    for value in result.output:
        print(f"    out: {value}")
    if result.text:
        print(f"    text: {result.text!r}")


def run_export(data, assembled, export, tokens, interpret=False):
    """Run one export in the simulator (and optionally on wasmtime).

    ``data`` is the binary module ``assembled`` was compiled from.
    """
    info = assembled.manifest["exports"].get(export)
    if info is None:
        raise KeyError(f"no exported function {export!r}")
    if len(tokens) != len(info["params"]):
        raise ValueError(f"{export} expects {len(info['params'])} arguments, got {len(tokens)}")
    values = [_parse_value(t, token) for t, token in zip(info["params"], tokens)]

    print(f"\nRunning {export}({', '.join(tokens)}):")
    vm = CommandVM(assembled)
    result = vm.call(export, *values)
    _print_result(f"datapack ({result.ticks} ticks, {result.commands} commands)", result, info["results"])
    if interpret:
        expected = ReferenceInstance(data).run(export, *values)
        _print_result("wasmtime", expected, info["results"])
        same = (
            values_agree(info["results"], result.results, expected.results)
            and expected.trap == result.trap
            and expected.exit_code == result.exit_code
            and expected.output == result.output
        )
        print("  ✓ Results agree" if same else "  ✗ Results differ")
        return result, same
    return result, True


def main(args):
    params = parse_args(args)
    if params.verbose:
        logging.basicConfig(
            level=logging.DEBUG if params.verbose > 1 else logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )

    if params.diff:
        return 1 if diff_datapacks(params.diff[0], params.diff[1]) else 0
    if params.hash:
        hash_datapack(params.hash)
        return 0
    if params.sign:
        try:
            sign_datapack(params.sign)
        except (RuntimeError, ValueError) as exc:
            print(f"✗ {exc}")
            return 1
        return 0
    if params.verify:
        try:
            return 0 if verify_datapack(params.verify) else 1
        except RuntimeError as exc:
            print(f"✗ {exc}")
            return 1
    if not params.input:
        print("✗ No input module given (see --help)")
        return 2

    source = Path(params.input)
    try:
        hosts = _host_registry(params.hosts)
        options = CompileOptions(
            namespace=params.namespace,
            budget=None if params.no_budget else params.budget,
            max_depth=params.max_depth,
            jobs=params.jobs,
            comments=params.comments,
        )
        data = source.read_bytes()
        module = decode_module(data)
        validate_module(module)
        print(f"Module: {source} ({module.num_funcs} functions, {len(module.exports)} exports)")

        if params.dump_cfg:
            print_cfgs(module)
        assembled = compile_module(module, options, hosts, validate=False)
    except (CompileError, ValueError, OSError) as exc:
        print(f"✗ {exc}")
        return 1

    print(
        f"  ✓ Compiled {len(assembled)} command functions "
        f"({assembled.command_count} commands), digest {assembled.digest[:16]}"
    )
    for row in module_summary(assembled):
        print(
            "    f{function}: {blocks} blocks ({reachable} reachable, {loops} loops), "
            "{commands} commands".format(**row)
        )

    output = params.output or f"{source.with_suffix('')}_datapack"
    assembled.write(output)

    if params.graphviz:
        try:
            for func_index in range(module.num_imported_funcs, module.num_funcs):
                export_graphviz(module, func_index, Path(params.graphviz) / f"f{func_index}.svg")
        except RuntimeError as exc:
            print(f"  ✗ {exc}")
    if params.visualize:
        try:
            visualize_cfg(module, _function_index(module, params.visualize))
        except (RuntimeError, ValueError) as exc:
            print(f"  ✗ {exc}")

    if params.run:
        export, *tokens = params.run
        try:
            _, same = run_export(data, assembled, export, tokens, params.interpret)
        except (KeyError, ValueError, RuntimeError, CommandError) as exc:
            print(f"  ✗ {exc}")
            return 1
        if not same:
            return 1
    return 0


__all__ = ["main", "parse_args", "run_export"]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main(sys.argv[1:]))
