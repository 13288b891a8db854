"""Visualization helpers for stable marriage runs.

The helpers provided here operate on the JSON-compatible dictionaries produced
by :func:`matching_core.export_matching_run`.  Frames are drawn with
matplotlib/networkx, one per recorded step; ``run_to_dot`` emits the same
information as a Graphviz digraph.  If node positions are not provided, the
two groups are laid out in two columns.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import networkx as nx
from matplotlib.lines import Line2D

logger = logging.getLogger(__name__)

PROPOSER_COLOR = 'blue'
REVIEWER_COLOR = 'pink'


def _extract_label_mapping(run_data: Dict[str, object]) -> Dict[int, str]:
    mapping_raw = run_data.get('int_to_node', {}) or {}
    return {int(k): str(v) for k, v in mapping_raw.items()}


def _label_for(idx: int, labels: Dict[int, str]) -> str:
    return labels.get(idx, str(idx))


def _build_graph(run_data: Dict[str, object], labels: Dict[int, str]) -> nx.DiGraph:
    graph = nx.DiGraph()
    for label in (_label_for(k, labels) for k in sorted(labels)):
        graph.add_node(label)
    for entry in run_data.get('edges', []):
        if len(entry) < 2:
            continue
        u_idx, v_idx = entry[0], entry[1]
        pref = entry[2] if len(entry) > 2 else None
        graph.add_edge(_label_for(int(u_idx), labels), _label_for(int(v_idx), labels), preference=pref)
    return graph


def _node_color(label: str, groups: Dict[str, str], run_data: Dict[str, object]) -> str:
    group = groups.get(label)
    if group == 'proposer':
        return run_data.get('proposer_color', PROPOSER_COLOR)
    if group == 'reviewer':
        return run_data.get('reviewer_color', REVIEWER_COLOR)
    return run_data.get('default_node_color', 'lightgray')


def _resolve_positions(
    graph: nx.DiGraph,
    run_data: Dict[str, object],
    groups: Dict[str, str],
) -> Dict[str, Tuple[float, float]]:
    raw_positions = run_data.get('node_positions', None)
    positions: Dict[str, Tuple[float, float]] = {}
    if isinstance(raw_positions, dict):
        for key, value in raw_positions.items():
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                continue
            if key in graph:
                positions[key] = (float(value[0]), float(value[1]))
    missing = set(graph.nodes()) - set(positions)
    if not missing:
        return positions

    proposers = [node for node in graph.nodes() if groups.get(node) == 'proposer']
    if proposers and len(proposers) < graph.number_of_nodes():
        layout = nx.bipartite_layout(graph, proposers)
    else:
        seed = run_data.get('layout_seed')
        layout = nx.spring_layout(graph, seed=seed) if seed is not None else nx.spring_layout(graph)
    for node in missing:
        positions[node] = tuple(layout[node])
    return positions


def _engaged_edges(graph: nx.DiGraph, pairs: Sequence[Sequence[str]]) -> Iterable[Tuple[str, str]]:
    for pair in pairs:
        if len(pair) != 2:
            continue
        u, v = pair
        if graph.has_edge(u, v):
            yield (u, v)
        if graph.has_edge(v, u):
            yield (v, u)


def _stages(run_data: Dict[str, object]) -> List[Dict[str, object]]:
    history = run_data.get('matching_history', []) or []
    if history:
        return list(history)
    return [{'event': 'final', 'pairs': run_data.get('pairs', []) or []}]


def visualize_matching_run(
    run_data: Dict[str, object],
    output_dir: str,
    *,
    figure_format: str = 'png',
    dpi: int = 150,
    skip_existing: bool = True,
    show_preferences: bool = True,
) -> List[str]:
    """Render one frame per recorded step of a run.

    Parameters
    ----------
    run_data:
        Dictionary produced by :func:`matching_core.export_matching_run` or an
        equivalent data structure.
    output_dir:
        Directory where stage images will be saved.
    figure_format:
        Image format extension (``png``, ``svg`` etc.).
    dpi:
        Resolution for raster formats.
    skip_existing:
        If true, existing files will not be overwritten.
    show_preferences:
        Label every relation with its preference value.

    Returns
    -------
    list of str
        Paths of all generated (or existing) image files.
    """

    os.makedirs(output_dir, exist_ok=True)

    labels = _extract_label_mapping(run_data)
    graph = _build_graph(run_data, labels)
    groups = {str(k): str(v) for k, v in (run_data.get('groups', {}) or {}).items()}
    positions = _resolve_positions(graph, run_data, groups)
    connectionstyle = run_data.get('connectionstyle', 'arc3,rad=0.1')

    generated_files: List[str] = []

    for stage_idx, stage_data in enumerate(_stages(run_data)):
        stage_file = os.path.join(output_dir, f'stage_{stage_idx:03d}.{figure_format}')
        if skip_existing and os.path.exists(stage_file):
            generated_files.append(stage_file)
            continue

        plt.figure(figsize=(10, 8))
        ax = plt.gca()
        ax.set_axis_off()

        nx.draw_networkx_nodes(
            graph,
            positions,
            node_color=[_node_color(node, groups, run_data) for node in graph.nodes()],
            node_size=run_data.get('node_size', 300),
            edgecolors='black',
            linewidths=0.5,
        )

        engaged_edges = set(_engaged_edges(graph, stage_data.get('pairs', []) or []))
        proposal_edges = set()
        if stage_data.get('reviewer') is not None:
            candidate = (stage_data.get('proposer'), stage_data.get('reviewer'))
            if graph.has_edge(*candidate) and candidate not in engaged_edges:
                proposal_edges.add(candidate)
        other_edges = set(graph.edges()) - engaged_edges - proposal_edges

        edge_styles = [
            (other_edges, {'edge_color': 'lightgray', 'width': 1, 'alpha': 0.6}),
            (engaged_edges, {'edge_color': 'red', 'width': 2.5}),
            (proposal_edges, {'edge_color': 'orange', 'width': 2, 'style': 'dashed'}),
        ]
        for edgelist, style in edge_styles:
            if not edgelist:
                continue
            nx.draw_networkx_edges(
                graph,
                positions,
                edgelist=list(edgelist),
                connectionstyle=connectionstyle,
                **style,
            )

        if show_preferences:
            edge_labels = {
                (u, v): f'{pref:g}'
                for u, v, pref in graph.edges(data='preference')
                if pref is not None
            }
            nx.draw_networkx_edge_labels(
                graph,
                positions,
                edge_labels=edge_labels,
                font_size=run_data.get('edge_label_font_size', 7),
                connectionstyle=connectionstyle,
            )

        nx.draw_networkx_labels(
            graph,
            positions,
            font_size=run_data.get('label_font_size', 10),
        )

        legend_elements = [
            Line2D([0], [0], color='red', lw=2.5, label='Engaged relations'),
            Line2D([0], [0], color='orange', lw=2, ls='dashed', label='Current proposal'),
            Line2D([0], [0], color='gray', lw=1, alpha=0.6, label='Other relations'),
        ]
        ax.legend(handles=legend_elements, loc='best')
        ax.set_title(f"Stage {stage_idx}: {stage_data.get('event', '')}")

        plt.tight_layout()
        plt.savefig(stage_file, dpi=dpi)
        plt.close()
        generated_files.append(stage_file)

    logger.info("Rendered %d frames into %s", len(generated_files), output_dir)
    return generated_files


def visualize_runs_from_file(
    json_path: str,
    output_root: str = 'matching_visualizations',
    *,
    figure_format: str = 'png',
    dpi: int = 150,
    skip_existing: bool = True,
    show_preferences: bool = True,
) -> Dict[str, List[str]]:
    """Render every run saved by :func:`matching_core.save_matching_run`.

    Each run gets its own ``run_<run_id>`` directory under ``output_root``;
    runs without an id are numbered by their position in the file.
    """

    with open(json_path, 'r') as fh:
        runs = json.load(fh)
    if isinstance(runs, dict):
        runs = [runs]

    os.makedirs(output_root, exist_ok=True)
    frames_by_run: Dict[str, List[str]] = {}
    for position, run_data in enumerate(runs):
        run_id = str(run_data.get('run_id', position))
        logger.info("Rendering run %s from %s", run_id, json_path)
        frames_by_run[run_id] = visualize_matching_run(
            run_data,
            os.path.join(output_root, f'run_{run_id}'),
            figure_format=figure_format,
            dpi=dpi,
            skip_existing=skip_existing,
            show_preferences=show_preferences,
        )
    return frames_by_run


def _dot_quote(text: object) -> str:
    return '"' + str(text).replace('\\', '\\\\').replace('"', '\\"') + '"'


def run_to_dot(run_data: Dict[str, object], *, stage: Optional[int] = None) -> str:
    """Return the run (final state, or ``stage``) as a Graphviz digraph."""

    labels = _extract_label_mapping(run_data)
    graph = _build_graph(run_data, labels)
    groups = {str(k): str(v) for k, v in (run_data.get('groups', {}) or {}).items()}
    if stage is None:
        pairs = run_data.get('pairs', []) or []
    else:
        pairs = _stages(run_data)[stage].get('pairs', []) or []
    engaged_edges = set(_engaged_edges(graph, pairs))

    lines = ['digraph G {']
    for node in graph.nodes():
        color = PROPOSER_COLOR if groups.get(node) == 'proposer' else REVIEWER_COLOR
        lines.append(f'{_dot_quote(node)}[label={_dot_quote(node)},color="{color}"];')
    for u, v, pref in graph.edges(data='preference'):
        color = 'red' if (u, v) in engaged_edges else 'black'
        pref_label = '' if pref is None else f'{pref:g}'
        lines.append(f'{_dot_quote(u)}->{_dot_quote(v)} [color="{color}", label="{pref_label}"];')
    lines.append('}')
    return '\n'.join(lines) + '\n'


__all__ = [
    "visualize_matching_run",
    "visualize_runs_from_file",
    "run_to_dot",
]
