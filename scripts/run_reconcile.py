from __future__ import annotations

import argparse
import json

from deps.escrow import get_engine
from services.reconcile import run_reconcile


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay escrow ledgers once and report inconsistencies.")
    parser.add_argument("--project", action="append", dest="projects", help="limit to a project id (repeatable)")
    parser.add_argument("--json", action="store_true", help="print the full report as JSON")
    args = parser.parse_args()

    result = run_reconcile(get_engine(), project_ids=args.projects)
    summary = result["summary"]

    if args.json:
        print(json.dumps(result, indent=2, default=str))
        return

    print("reconcile_report_id:", result["id"])
    print("counts:", " ".join(f"{k}={v}" for k, v in summary.items()))
    for item in result["items"]:
        print("item:", json.dumps(item, default=str))

    if result["items"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
