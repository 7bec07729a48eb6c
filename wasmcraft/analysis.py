from __future__ import annotations

from pathlib import Path

try:
    import networkx as nx
except ModuleNotFoundError:  # pragma: no cover
    nx = None

try:
    import matplotlib.pyplot as plt
except ModuleNotFoundError:  # pragma: no cover
    plt = None

try:
    import pydot
except ModuleNotFoundError:  # pragma: no cover
    pydot = None

from .compiler.cfg import (
    BranchIf,
    BranchTable,
    Call,
    CallIndirect,
    Fallthrough,
    Jump,
    Return,
    Unreachable,
    build_cfg,
)
from .compiler.text import format_instr

BLOCK_COLORS = {
    "entry": "#A5D6A7",
    "loop": "#FFE082",
    "then": "#CE93D8",
    "else": "#CE93D8",
    "merge": "#B3E5FC",
    "next": "#B3E5FC",
    "edge": "#E0E0E0",
    "cont": "#FFAB91",
    "dead": "#CFD8DC",
}

_PSEUDO = frozenset({"stack.move", "call.resume"})


def _require_networkx():
    if nx is None:
        raise RuntimeError("Graph analysis requires the 'networkx' package to be installed")


def describe_terminator(term):
    """One-line summary of a block terminator."""
    if isinstance(term, Fallthrough):
        return f"fallthrough b{term.target}"
    if isinstance(term, Jump):
        return f"jump b{term.target}" + (" (back edge)" if term.back_edge else "")
    if isinstance(term, BranchIf):
        return f"br_if %s{term.cond} ? b{term.taken} : b{term.not_taken}"
    if isinstance(term, BranchTable):
        targets = " ".join(f"b{t}" for t in term.targets)
        return f"br_table %s{term.index} [{targets}] default b{term.default}"
    if isinstance(term, Return):
        return f"return from %s{term.base}"
    if isinstance(term, Unreachable):
        return "unreachable" if term.kind == "unreachable" else f"trap {term.kind}"
    if isinstance(term, Call):
        return f"call f{term.func} -> b{term.cont} (live {len(term.live)})"
    if isinstance(term, CallIndirect):
        return f"call_indirect type {term.type_index} -> b{term.cont} (live {len(term.live)})"
    return repr(term)


def format_cfg(module, cfg):
    """Text listing of a control-flow graph, one block after another."""
    reachable = cfg.reachable()
    lines = [f"f{cfg.func_index} {module.function_name(cfg.func_index)} {cfg.func_type}"]
    for block in cfg.blocks:
        marker = "" if block.index in reachable else "  (unreachable)"
        lines.append(f"  b{block.index} [{block.kind}] height={block.height}{marker}")
        for instr in block.instrs:
            lines.append(f"      {format_instr(instr) if instr.op not in _PSEUDO else instr.op}")
        lines.append(f"      => {describe_terminator(block.terminator)}")
    return "\n".join(lines)


def print_cfgs(module, func_indices=None):
    indices = func_indices
    if indices is None:
        indices = range(module.num_imported_funcs, module.num_funcs)
    for func_index in indices:
        print(format_cfg(module, build_cfg(module, func_index)))


def cfg_to_networkx(cfg):
    """A ``networkx.DiGraph`` of the blocks; back edges carry ``back=True``."""
    _require_networkx()
    graph = nx.DiGraph(func_index=cfg.func_index)
    for block in cfg.blocks:
        graph.add_node(
            block.index,
            kind=block.kind,
            height=block.height,
            instrs=len(block.instrs),
            terminator=type(block.terminator).__name__,
        )
    back = set(cfg.back_edges())
    for src, dst in cfg.edges():
        graph.add_edge(src, dst, back=(src, dst) in back)
    return graph


def call_graph(module):
    """Direct and indirect call edges between functions."""
    _require_networkx()
    graph = nx.DiGraph()
    for func_index in range(module.num_funcs):
        graph.add_node(func_index, name=module.function_name(func_index),
                       imported=module.is_import(func_index))
    table_entries = {f for segment in module.elements for f in segment.funcs}
    for func_index in range(module.num_imported_funcs, module.num_funcs):
        for instr in module.function(func_index).body:
            if instr.op == "call":
                graph.add_edge(func_index, instr.imm, indirect=False)
            elif instr.op == "call_indirect":
                expected = module.types[instr.imm[0]]
                for target in sorted(table_entries):
                    if module.func_type(target) == expected:
                        graph.add_edge(func_index, target, indirect=True)
    return graph


def recursive_functions(module):
    """Functions that can reach themselves through calls."""
    graph = call_graph(module)
    recursive = set()
    for component in nx.strongly_connected_components(graph):
        if len(component) > 1:
            recursive |= component
        else:
            (node,) = component
            if graph.has_edge(node, node):
                recursive.add(node)
    return sorted(recursive)


def loop_headers(cfg):
    """Blocks entered by a back edge, sorted by index."""
    return sorted({dst for _, dst in cfg.back_edges()})


def module_summary(assembled):
    """Per-function block and command counts of an assembled module."""
    rows = []
    for output in assembled.outputs:
        rows.append(
            {
                "function": output.func_index,
                "blocks": len(output.cfg),
                "reachable": len(output.cfg.reachable()),
                "commands": sum(len(f) for f in output.functions),
                "loops": len(loop_headers(output.cfg)),
            }
        )
    return rows


def export_graphviz(module, func_index, output_path):
    """Export the control-flow graph of one function as SVG (or DOT for ``.dot``)."""
    if pydot is None:
        raise RuntimeError("Graphviz export requires the 'pydot' package to be installed")

    cfg = build_cfg(module, func_index)
    reachable = cfg.reachable()
    graph = pydot.Dot(
        f"f{func_index}",
        graph_type="digraph",
        rankdir="TB",
        fontname="Helvetica",
        label=f"{module.function_name(func_index)} {cfg.func_type}",
    )
    for block in cfg.blocks:
        kind = block.kind if block.index in reachable else "dead"
        graph.add_node(
            pydot.Node(
                f"b{block.index}",
                label=f"b{block.index} [{block.kind}]\\n{len(block.instrs)} instrs\\n"
                f"{describe_terminator(block.terminator)}",
                shape="box",
                style="filled",
                fillcolor=BLOCK_COLORS.get(kind, "#B0BEC5"),
                color="#34495e",
                fontname="Helvetica",
            )
        )
    back = set(cfg.back_edges())
    for src, dst in cfg.edges():
        attrs = {"color": "#E65100", "style": "dashed"} if (src, dst) in back else {}
        graph.add_edge(pydot.Edge(f"b{src}", f"b{dst}", **attrs))

    output_path = Path(output_path)
    if output_path.parent and not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.suffix == ".dot":
        graph.write_raw(str(output_path))
    else:
        graph.write_svg(str(output_path))
    print(f"  ✓ Graphviz CFG exported → {output_path}")
    return output_path


def visualize_cfg(module, func_index, output_path=None):  # pragma: no cover
    """Draw a function's control-flow graph with matplotlib."""
    if nx is None or plt is None:
        raise RuntimeError("Visualization requires networkx and matplotlib to be installed")

    cfg = build_cfg(module, func_index)
    graph = cfg_to_networkx(cfg)
    reachable = cfg.reachable()
    positions = nx.spring_layout(graph, seed=func_index)
    colors = [
        BLOCK_COLORS.get(graph.nodes[n]["kind"] if n in reachable else "dead", "#B0BEC5")
        for n in graph.nodes
    ]
    labels = {n: f"b{n}\n{graph.nodes[n]['kind']}" for n in graph.nodes}
    back = [(u, v) for u, v, data in graph.edges(data=True) if data["back"]]

    fig, ax = plt.subplots()
    nx.draw(
        graph,
        positions,
        ax=ax,
        with_labels=True,
        labels=labels,
        node_color=colors,
        edgecolors="black",
        font_size=8,
    )
    if back:
        nx.draw_networkx_edges(
            graph, positions, ax=ax, edgelist=back, style="dashed", edge_color="#E65100"
        )
    ax.set_title(f"{module.function_name(func_index)} control flow")
    ax.margins(0.2)
    plt.tight_layout()
    if output_path:
        fig.savefig(output_path)
        print(f"  ✓ CFG rendering saved → {output_path}")
    else:
        plt.show()
    plt.close(fig)


__all__ = [
    "BLOCK_COLORS",
    "call_graph",
    "cfg_to_networkx",
    "describe_terminator",
    "export_graphviz",
    "format_cfg",
    "loop_headers",
    "module_summary",
    "print_cfgs",
    "recursive_functions",
    "visualize_cfg",
]
