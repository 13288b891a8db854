"""Match three proposers with three reviewers and print the result as DOT.

The output can be saved as ``graph.dot`` and opened with Graphviz.  Proposers
are drawn blue, reviewers pink, and the engaged relations red.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from matching_core import build_preference_graph, export_matching_run, save_matching_run
from visualization_core import run_to_dot, visualize_matching_run

PROPOSER_PREFERENCES = [[1, 4, 3], [2, 5, 2], [4, 3, 6]]
REVIEWER_PREFERENCES = [[2, 2, 3], [4, 3, 5], [2, 3, 2]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stable marriage of three proposers and three reviewers")
    parser.add_argument("--json", dest="json_path", default=None, help="append the run to this JSON file")
    parser.add_argument("--render-dir", default=None, help="render one image per step into this directory")
    parser.add_argument("--run-id", default="example")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every proposal")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    graph = build_preference_graph(PROPOSER_PREFERENCES, REVIEWER_PREFERENCES)
    run_data = export_matching_run(run_id=args.run_id, graph=graph)

    sys.stdout.write(run_to_dot(run_data))

    if args.json_path:
        save_matching_run(args.json_path, run_data)
    if args.render_dir:
        visualize_matching_run(run_data, args.render_dir, skip_existing=False)
    return 0


if __name__ == '__main__':
    sys.exit(main())
