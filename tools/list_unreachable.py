import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CASE_PATH = REPO_ROOT / "cases" / "chest-pain.json"

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from casebook.case_schema import normalize_nodes
from tools.softlock import build_graph, reachable_from


def load_case(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def find_unreachable(data: dict) -> list:
    nodes, _ = normalize_nodes(data.get("nodes"))
    graph = build_graph(nodes)
    start = data.get("startNodeId")
    reached = reachable_from(start, graph) if isinstance(start, str) else set()
    return sorted(set(graph.keys()) - reached)


def main() -> None:
    case_path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_CASE_PATH
    data = load_case(case_path)
    nodes, _ = normalize_nodes(data.get("nodes"))
    unreachable = find_unreachable(data)

    print(f"Case file: {case_path}")
    print(f"Total nodes: {len(nodes)}")
    print(f"Reachable nodes: {len(nodes) - len(unreachable)}")
    if unreachable:
        print("Unreachable nodes:")
        for node_id in unreachable:
            print(f"  - {node_id}")
    else:
        print("All nodes reachable from the start node.")


if __name__ == "__main__":
    main()
