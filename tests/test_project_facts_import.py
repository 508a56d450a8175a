import csv
import sys
from datetime import date
from pathlib import Path

from openpyxl import Workbook

sys.path.append(str(Path(__file__).resolve().parents[1]))

from lientrack.extractors import project_facts


def _write_csv(path: Path, header: list[str], rows: list[list[str]]) -> Path:
    with path.open("w", encoding="utf-8", newline="") as fp:
        writer = csv.writer(fp)
        writer.writerow(header)
        writer.writerows(rows)
    return path


def test_parse_csv_with_spreadsheet_headers(tmp_path):
    path = _write_csv(
        tmp_path / "projects.csv",
        ["Project ID", "Owner", "Role", "Project Type", "State", "First Furnished", "Last Furnished", "Completion"],
        [
            ["P-1", "user-1", "Subcontractor", "Commercial", "tx", "2024-01-05", "2024-03-20", "2024-04-01"],
            ["P-2", "user-2", "supplier", "public", "TX", "2024-02-01", "", ""],
            ["", "", "", "", "", "", "", ""],
        ],
    )

    result = project_facts.parse(path)

    assert result.errors == []
    assert [project_id for project_id, _ in result.projects] == ["P-1", "P-2"]
    _, first = result.projects[0]
    assert first.user_id == "user-1"
    assert first.role == "subcontractor"
    assert first.jurisdiction == "TX"
    assert first.labor_start_date == date(2024, 1, 5)
    assert first.completion_date == date(2024, 4, 1)
    _, second = result.projects[1]
    assert second.last_work_date is None


def test_parse_reports_bad_rows_with_line_numbers(tmp_path):
    path = _write_csv(
        tmp_path / "projects.csv",
        ["project_id", "role", "project_type", "labor_start_date"],
        [
            ["P-1", "subcontractor", "commercial", "2024-01-05"],
            ["P-2", "subcontractor", "commercial", "not a date"],
            ["P-3", "", "commercial", "2024-01-05"],
        ],
    )

    result = project_facts.parse(path, default_user_id="user-9")

    assert [project_id for project_id, _ in result.projects] == ["P-1"]
    assert result.projects[0][1].user_id == "user-9"
    assert [error["row"] for error in result.errors] == [3, 4]
    assert result.errors[0]["project_id"] == "P-2"


def test_parse_without_project_column(tmp_path):
    path = _write_csv(tmp_path / "projects.csv", ["role", "project_type"], [["subcontractor", "commercial"]])

    result = project_facts.parse(path)

    assert result.projects == []
    assert result.errors == [{"row": None, "error": "no project id column found"}]


def test_parse_excel(tmp_path):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Job", "User", "Role", "Type", "Contract Date", "Last Work"])
    sheet.append(["J-7", "user-1", "general contractor", "residential", date(2024, 3, 20), date(2024, 6, 14)])
    path = tmp_path / "projects.xlsx"
    workbook.save(path)

    result = project_facts.parse(path)

    assert result.errors == []
    project_id, facts = result.projects[0]
    assert project_id == "J-7"
    assert facts.role == "general_contractor"
    assert facts.project_start_date == date(2024, 3, 20)
    assert facts.last_work_date == date(2024, 6, 14)
