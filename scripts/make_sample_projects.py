#!/usr/bin/env python
from __future__ import annotations

import argparse
import csv
from pathlib import Path


HEADER = [
    "Project ID",
    "User",
    "Role",
    "Project Type",
    "State",
    "Project Start",
    "First Furnished",
    "Last Furnished",
    "Completion",
]


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a project facts CSV template for /api/projects/import")
    parser.add_argument("--output", required=True, help="Output file path (.csv)")
    parser.add_argument("--user", default="user-1", help="Owner of the sample projects")
    args = parser.parse_args()

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open("w", newline="", encoding="utf-8") as fp:
        writer = csv.writer(fp)
        writer.writerow(HEADER)
        writer.writerow([
            "P-100",
            args.user,
            "subcontractor",
            "commercial",
            "TX",
            "2024-01-02",
            "2024-01-05",
            "2024-03-20",
            "2024-04-01",
        ])
        writer.writerow([
            "P-200",
            args.user,
            "general_contractor",
            "residential",
            "TX",
            "2024-02-01",
            "2024-02-10",
            "2024-06-14",
            "",
        ])

    print(f"project facts CSV template written: {output}")


if __name__ == "__main__":
    main()
