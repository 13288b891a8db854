"""Stable marriage (Gale-Shapley deferred acceptance) over a directed preference graph.

The graph is a :class:`networkx.DiGraph` whose vertices are people and whose
edges are one-directional *relations*: the edge ``u -> v`` carries how much
``u`` prefers ``v``.  The reverse edge, when present, is an independent record
with its own preference.  The engine first splits the people into two groups
(proposers and reviewers) by two-colouring the undirected skeleton, then runs
the proposal loop until no free proposer is left.

The result is written back to the graph as a boolean ``engaged`` edge
attribute (both directions of every matched pair), and returned as a
:class:`StableMarriageResult`.  The helper ``export_matching_run`` packages a
run for :mod:`visualization_core`.
"""

from __future__ import annotations

import enum
import json
import logging
import operator
import os
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple

import networkx as nx
from networkx.utils import not_implemented_for

logger = logging.getLogger(__name__)

DEBUG = None
CHECK_INVARIANTS = True

Node = Hashable
Compare = Callable[[float, float], bool]


class MatchingError(Exception):
    """Base class for every failure raised by the matching engine."""


class InvalidGraphShape(MatchingError, ValueError):
    """The undirected skeleton of the graph is not two-colourable."""


class InconsistentState(MatchingError, RuntimeError):
    """An engagement invariant was violated while matching."""


class MissingPreference(MatchingError, KeyError):
    """A consulted relation has no preference value."""

    def __str__(self):
        return str(self.args[0]) if self.args else ''


class Group(enum.Enum):
    PROPOSER = 'proposer'
    REVIEWER = 'reviewer'

    @property
    def opposite(self) -> 'Group':
        return Group.REVIEWER if self is Group.PROPOSER else Group.PROPOSER


class PersonStatus(enum.Enum):
    FREE = 'free'
    ENGAGED = 'engaged'
    # proposed to every eligible candidate without ending up engaged
    EXHAUSTED = 'exhausted'


class EventKind(enum.Enum):
    ACCEPTED = 'accepted'
    DISPLACED = 'displaced'
    REJECTED = 'rejected'
    EXHAUSTED = 'exhausted'


@dataclass(frozen=True)
class MatchingEvent:
    step: int
    kind: EventKind
    proposer: Node
    reviewer: Optional[Node] = None
    displaced: Optional[Node] = None
    proposals: int = 0


@dataclass
class StableMarriageResult:
    """Outcome of one :func:`stable_marriage` run."""

    groups: Dict[Node, Group]
    matching: Dict[Node, Node]
    exhausted: List[Node]
    proposals: int
    events: List[MatchingEvent] = field(default_factory=list)
    history: List[List[Tuple[Node, Node]]] = field(default_factory=list)

    @property
    def proposers(self) -> List[Node]:
        return [p for p, g in self.groups.items() if g is Group.PROPOSER]

    @property
    def reviewers(self) -> List[Node]:
        return [p for p, g in self.groups.items() if g is Group.REVIEWER]

    @property
    def displacements(self) -> int:
        return sum(1 for event in self.events if event.kind is EventKind.DISPLACED)

    def pairs(self) -> List[Tuple[Node, Node]]:
        return list(self.matching.items())


def _skeleton_neighbors(graph: nx.DiGraph, v: Node):
    if graph.is_directed():
        yield from graph.successors(v)
        yield from graph.predecessors(v)
    else:
        yield from graph.neighbors(v)


def find_partition(graph: nx.DiGraph, *, group: Optional[str] = 'group') -> Dict[Node, Group]:
    """Split the people of ``graph`` into proposers and reviewers.

    Breadth-first two-colouring of the undirected skeleton, one component at a
    time in vertex order.  The first vertex of every component is a proposer.
    Raises :class:`InvalidGraphShape` on a self-loop or an odd cycle; in that
    case no node attribute is touched.  When ``group`` is not None the labels
    are stored in that node attribute once colouring has succeeded.
    """

    labels: Dict[Node, Group] = {}
    for seed in graph:
        if seed in labels:
            continue
        labels[seed] = Group.PROPOSER
        queue = deque([seed])
        while queue:
            v = queue.popleft()
            for w in _skeleton_neighbors(graph, v):
                if w not in labels:
                    labels[w] = labels[v].opposite
                    queue.append(w)
                elif labels[w] is labels[v]:
                    raise InvalidGraphShape(
                        f"graph is not bipartite: relation between {v!r} and {w!r} "
                        f"joins two people of the same group"
                    )

    if group is not None:
        nx.set_node_attributes(graph, labels, group)
    return labels


def engaged_partner(graph: nx.DiGraph, person: Node, *, engaged: str = 'engaged') -> Optional[Node]:
    """Return the person ``person`` is engaged to, or None."""

    for _, target, is_engaged in graph.out_edges(person, data=engaged, default=False):
        if is_engaged:
            return target
    return None


def verify_matching(graph: nx.DiGraph, *, engaged: str = 'engaged') -> None:
    """Check engagement symmetry and monogamy, raising :class:`InconsistentState`."""

    for person in graph:
        partners = [
            target
            for _, target, is_engaged in graph.out_edges(person, data=engaged, default=False)
            if is_engaged
        ]
        if len(partners) > 1:
            raise InconsistentState(f"{person!r} is engaged to several people: {partners!r}")
        for partner in partners:
            if not graph.has_edge(partner, person):
                continue
            if not graph[partner][person].get(engaged, False):
                raise InconsistentState(
                    f"engagement {person!r} -> {partner!r} is not reciprocated"
                )


def _preference_of(graph: nx.DiGraph, u: Node, v: Node, preference: str):
    try:
        return graph[u][v][preference]
    except KeyError:
        raise MissingPreference(f"relation {u!r} -> {v!r} has no '{preference}' value") from None


@not_implemented_for("undirected")
@not_implemented_for("multigraph")
def stable_marriage(
    graph: nx.DiGraph,
    *,
    preference: str = 'preference',
    engaged: str = 'engaged',
    group: Optional[str] = 'group',
    compare: Compare = operator.ge,
    record_history: bool = False,
) -> StableMarriageResult:
    """Compute a stable matching between the two groups of ``graph``.

    Parameters
    ----------
    graph:
        Directed graph whose undirected skeleton is bipartite.  Modified in
        place: ``group`` is set on every node and ``engaged`` on every edge.
    preference:
        Edge attribute holding how much the source prefers the target.
    engaged:
        Edge attribute receiving the result.
    group:
        Node attribute receiving the partition labels (None to skip).
    compare:
        ``compare(a, b)`` is true when preference ``a`` is at least as good as
        ``b``.  Used by proposers only; with the default ``operator.ge`` a tie
        goes to the candidate met later in edge order.  Reviewers switch
        partners only on a strictly greater preference.
    record_history:
        Keep a snapshot of the engaged pairs after every step.

    Returns
    -------
    StableMarriageResult

    Raises
    ------
    NetworkXNotImplemented
        If ``graph`` is undirected or a multigraph.  Nothing is written.
    """

    groups = find_partition(graph, group=group)

    people = list(graph)
    index = {person: i for i, person in enumerate(people)}
    status = [PersonStatus.FREE] * len(people)
    proposed = {relation: False for relation in graph.edges()}
    nx.set_edge_attributes(graph, False, engaged)

    proposer_count = sum(1 for g in groups.values() if g is Group.PROPOSER)
    logger.info(
        "Starting stable marriage: %d proposers, %d reviewers, %d relations",
        proposer_count, len(people) - proposer_count, graph.number_of_edges(),
    )

    events: List[MatchingEvent] = []
    history: List[List[Tuple[Node, Node]]] = []
    proposals = 0

    def set_engaged(x, y, value):
        graph[x][y][engaged] = value
        graph[y][x][engaged] = value

    def current_fiance(reviewer):
        fiance = engaged_partner(graph, reviewer, engaged=engaged)
        if fiance is None:
            raise InconsistentState(
                f"reviewer {reviewer!r} is not free but has no engaged relation"
            )
        if status[index[fiance]] is not PersonStatus.ENGAGED:
            raise InconsistentState(
                f"{fiance!r} is engaged to {reviewer!r} but marked {status[index[fiance]].value}"
            )
        if not graph.has_edge(fiance, reviewer) or not graph[fiance][reviewer].get(engaged, False):
            raise InconsistentState(
                f"engagement {reviewer!r} -> {fiance!r} is not reciprocated"
            )
        return fiance

    def best_candidate(proposer):
        best = None
        best_preference = None
        for _, reviewer in graph.out_edges(proposer):
            if groups[reviewer] is not Group.REVIEWER:
                continue
            if proposed[(proposer, reviewer)] or not graph.has_edge(reviewer, proposer):
                continue
            value = _preference_of(graph, proposer, reviewer, preference)
            if best is None or compare(value, best_preference):
                best = reviewer
                best_preference = value
        return best

    def record(kind, proposer, reviewer=None, displaced=None):
        event = MatchingEvent(len(events), kind, proposer, reviewer, displaced, proposals)
        events.append(event)
        if DEBUG: DEBUG('%s(%r, %r, displaced=%r)' % (kind.value, proposer, reviewer, displaced))
        logger.debug(
            "step %d: %s proposer=%r reviewer=%r displaced=%r",
            event.step, kind.value, proposer, reviewer, displaced,
        )
        if record_history:
            history.append([
                (p, engaged_partner(graph, p, engaged=engaged))
                for p in people
                if groups[p] is Group.PROPOSER and status[index[p]] is PersonStatus.ENGAGED
            ])

    # every iteration either records a proposal or retires a proposer
    max_iterations = graph.number_of_edges() + proposer_count + 1
    iterations = 0
    while True:
        proposer = next(
            (p for p in people
             if groups[p] is Group.PROPOSER and status[index[p]] is PersonStatus.FREE),
            None,
        )
        if proposer is None:
            break

        iterations += 1
        if iterations > max_iterations:
            raise InconsistentState(
                f"matching did not converge within {max_iterations} iterations"
            )

        reviewer = best_candidate(proposer)
        if reviewer is None:
            status[index[proposer]] = PersonStatus.EXHAUSTED
            record(EventKind.EXHAUSTED, proposer)
            continue

        proposed[(proposer, reviewer)] = True
        proposals += 1

        if status[index[reviewer]] is PersonStatus.FREE:
            set_engaged(proposer, reviewer, True)
            status[index[proposer]] = PersonStatus.ENGAGED
            status[index[reviewer]] = PersonStatus.ENGAGED
            record(EventKind.ACCEPTED, proposer, reviewer)
            continue

        fiance = current_fiance(reviewer)
        new_preference = _preference_of(graph, reviewer, proposer, preference)
        old_preference = _preference_of(graph, reviewer, fiance, preference)
        if new_preference > old_preference:
            set_engaged(reviewer, fiance, False)
            status[index[fiance]] = PersonStatus.FREE
            set_engaged(proposer, reviewer, True)
            status[index[proposer]] = PersonStatus.ENGAGED
            record(EventKind.DISPLACED, proposer, reviewer, fiance)
        else:
            record(EventKind.REJECTED, proposer, reviewer)

    if CHECK_INVARIANTS:
        verify_matching(graph, engaged=engaged)

    matching: Dict[Node, Node] = {}
    exhausted: List[Node] = []
    for person in people:
        if groups[person] is not Group.PROPOSER:
            continue
        if status[index[person]] is PersonStatus.ENGAGED:
            matching[person] = engaged_partner(graph, person, engaged=engaged)
        else:
            exhausted.append(person)

    logger.info(
        "Stable marriage finished: %d pairs, %d exhausted, %d proposals",
        len(matching), len(exhausted), proposals,
    )
    return StableMarriageResult(groups, matching, exhausted, proposals, events, history)


@not_implemented_for("undirected")
@not_implemented_for("multigraph")
def find_blocking_pairs(
    graph: nx.DiGraph,
    *,
    preference: str = 'preference',
    engaged: str = 'engaged',
    group: Optional[str] = 'group',
    compare: Compare = operator.ge,
) -> List[Tuple[Node, Node]]:
    """List the proposer/reviewer pairs that would both rather be together.

    ``graph`` must carry the ``engaged`` attributes of a finished run.  When
    ``group`` is None or some node has no label under it, the groups are
    derived again with :func:`find_partition`.  Only pairs related in both
    directions can block.  The proposer side is judged with ``compare``
    (holding an equally good partner is enough), the reviewer side with a
    strict comparison.
    """

    if group is not None and all(group in data for _, data in graph.nodes(data=True)):
        groups = dict(graph.nodes(data=group))
    else:
        groups = find_partition(graph, group=None)

    blocking = []
    for x, y in graph.edges():
        if groups[x] is not Group.PROPOSER:
            continue
        if graph[x][y].get(engaged, False) or not graph.has_edge(y, x):
            continue
        x_partner = engaged_partner(graph, x, engaged=engaged)
        if x_partner is not None and compare(
            _preference_of(graph, x, x_partner, preference),
            _preference_of(graph, x, y, preference),
        ):
            continue
        y_partner = engaged_partner(graph, y, engaged=engaged)
        if y_partner is not None and not (
            _preference_of(graph, y, x, preference) > _preference_of(graph, y, y_partner, preference)
        ):
            continue
        blocking.append((x, y))
    return blocking


def compute_matching_map(
    graph: nx.DiGraph,
    *,
    preference: str = 'preference',
    compare: Compare = operator.ge,
) -> Dict[Node, Node]:
    """Convenience wrapper returning a person→partner dictionary."""

    result = stable_marriage(graph, preference=preference, compare=compare)

    matching: Dict[Node, Node] = {}
    for proposer, reviewer in result.matching.items():
        matching[proposer] = reviewer
        matching[reviewer] = proposer
    return matching


def build_preference_graph(
    proposer_preferences: Sequence[Sequence[Optional[float]]],
    reviewer_preferences: Sequence[Sequence[Optional[float]]],
    *,
    preference: str = 'preference',
) -> nx.DiGraph:
    """Build a preference graph from two matrices.

    Row ``i`` of ``proposer_preferences`` holds proposer ``i``'s score for
    every reviewer, and row ``j`` of ``reviewer_preferences`` reviewer ``j``'s
    score for every proposer.  Proposers become nodes ``0..n-1`` and reviewers
    ``n..n+m-1``.  A ``None`` entry leaves that relation out.
    """

    n = len(proposer_preferences)
    m = len(reviewer_preferences)
    for i, row in enumerate(proposer_preferences):
        if len(row) != m:
            raise ValueError(f"proposer row {i} has {len(row)} entries, expected {m}")
    for j, row in enumerate(reviewer_preferences):
        if len(row) != n:
            raise ValueError(f"reviewer row {j} has {len(row)} entries, expected {n}")

    graph = nx.DiGraph()
    graph.add_nodes_from(range(n + m))
    for i in range(n):
        for j in range(m):
            forward = proposer_preferences[i][j]
            backward = reviewer_preferences[j][i]
            if forward is not None:
                graph.add_edge(i, n + j, **{preference: float(forward)})
            if backward is not None:
                graph.add_edge(n + j, i, **{preference: float(backward)})
    return graph


def export_matching_run(
    *,
    run_id: str,
    graph: nx.DiGraph,
    graph_metadata: Optional[Dict[str, object]] = None,
    node_labels: Optional[Dict[Node, str]] = None,
    preference: str = 'preference',
    compare: Compare = operator.ge,
) -> Dict[str, object]:
    """Run the matcher and package results for visualization."""

    result = stable_marriage(graph, preference=preference, compare=compare, record_history=True)

    people = list(graph)
    index = {person: i for i, person in enumerate(people)}
    node_labels = node_labels or {}

    def label(person):
        return node_labels.get(person, str(person))

    processed_history = []
    for event, snapshot in zip(result.events, result.history):
        stage_data: Dict[str, object] = {
            'event': event.kind.value,
            'proposer': label(event.proposer),
            'reviewer': None if event.reviewer is None else label(event.reviewer),
            'displaced': None if event.displaced is None else label(event.displaced),
            'pairs': [[label(p), label(r)] for p, r in snapshot],
        }
        processed_history.append(stage_data)

    data = {
        'run_id': run_id,
        'int_to_node': {str(index[person]): label(person) for person in people},
        'groups': {label(person): g.value for person, g in result.groups.items()},
        'edges': [
            (index[u], index[v], None if pref is None else float(pref))
            for u, v, pref in graph.edges(data=preference, default=None)
        ],
        'pairs': [[label(p), label(r)] for p, r in result.pairs()],
        'exhausted': [label(p) for p in result.exhausted],
        'proposals': result.proposals,
        'matching_history': processed_history,
    }
    if graph_metadata:
        data.update(graph_metadata)
    return data


def save_matching_run(
    json_path: str,
    run_data: Dict[str, object],
    *,
    append: bool = True,
) -> None:
    """Persist run data to a JSON file readable by ``visualize_runs_from_file``."""

    runs: List[Dict[str, object]] = []
    if append and os.path.exists(json_path):
        with open(json_path, 'r') as fh:
            try:
                existing = json.load(fh)
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable run file %s", json_path)
                existing = []
        if isinstance(existing, list):
            runs = existing
        elif existing:
            runs = [existing]

    runs.append(run_data)

    with open(json_path, 'w') as fh:
        json.dump(runs, fh, indent=2)


__all__ = [
    "MatchingError",
    "InvalidGraphShape",
    "InconsistentState",
    "MissingPreference",
    "Group",
    "PersonStatus",
    "EventKind",
    "MatchingEvent",
    "StableMarriageResult",
    "find_partition",
    "stable_marriage",
    "engaged_partner",
    "verify_matching",
    "find_blocking_pairs",
    "compute_matching_map",
    "build_preference_graph",
    "export_matching_run",
    "save_matching_run",
]
