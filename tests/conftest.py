from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import networkx as nx
import pytest

from matching_core import build_preference_graph

PROPOSER_PREFERENCES = [[1, 4, 3], [2, 5, 2], [4, 3, 6]]
REVIEWER_PREFERENCES = [[2, 2, 3], [4, 3, 5], [2, 3, 2]]


@pytest.fixture
def three_by_three() -> nx.DiGraph:
    """The 3-vs-3 preference graph of the example program."""
    return build_preference_graph(PROPOSER_PREFERENCES, REVIEWER_PREFERENCES)


@pytest.fixture
def triangle() -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_edge(0, 1, preference=1.0)
    graph.add_edge(1, 2, preference=1.0)
    graph.add_edge(2, 0, preference=1.0)
    return graph


def relate(graph: nx.DiGraph, u, v, forward, backward=None) -> None:
    """Add ``u -> v`` and, unless ``backward`` is None, ``v -> u``."""
    graph.add_edge(u, v, preference=forward)
    if backward is not None:
        graph.add_edge(v, u, preference=backward)
