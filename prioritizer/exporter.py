"""Stack-rank export to an XLSX workbook."""
from __future__ import annotations

from io import BytesIO
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session

from prioritizer import services
from prioritizer.scorer import load_criteria

EXPORT_FILENAME = "requirements_with_scores.xlsx"

# (column header, requirement field)
EXPORT_COLUMNS = (
    ("Key", "key"),
    ("Summary", "summary"),
    ("Priority", "priority"),
    ("Status", "status"),
    ("Assignee", "assignee"),
    ("Time Spent", "time_spent"),
    ("Labels", "labels"),
    ("Rough Estimate", "rough_estimate"),
    ("Related Customers", "related_customers"),
    ("Stack Rank", "rank"),
    ("Overall Score", "score"),
    ("Product Owner", "product_owner"),
)


def _row_values(item: dict[str, Any], criteria) -> list[Any]:
    values: list[Any] = []
    for _, field_name in EXPORT_COLUMNS:
        value = item.get(field_name)
        if field_name == "score":
            value = round(value or 0.0, 2)
        elif field_name != "rank" and value is None:
            value = ""
        values.append(value)
    scores = item.get("criteria") or {}
    for crit in criteria:
        score = scores.get(crit.id)
        values.append(round(float(score), 2) if isinstance(score, (int, float)) else 0)
    return values


def export_stack_rank(session: Session) -> BytesIO:
    """Build the stack-rank workbook: one row per requirement in rank order."""
    criteria = load_criteria(session)
    items = services.list_requirements(session, sort_by="rank", sort_dir="asc")

    wb = Workbook()
    ws = wb.active
    ws.title = "Requirements"
    headers = [label for label, _ in EXPORT_COLUMNS] + [f"{c.name} Score" for c in criteria]
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    ws.freeze_panes = "A2"

    for item in items:
        ws.append(_row_values(item, criteria))

    for idx, header in enumerate(headers, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = max(12, len(header) + 2)

    output = BytesIO()
    wb.save(output)
    output.seek(0)
    return output
