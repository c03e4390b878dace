# =============================================================================
# Database Export — whole-database dumps as JSON or CSV
# =============================================================================
#
# JSON: {table_name: [row, ...]} with JSON-safe values (executor output).
#
# CSV: one document, one section per table:
#
#   Project: shop
#   Export Date: 2026-10-19T08:30:00+00:00
#
#   ====...====
#   Table: items
#   ====...====
#   "id","name"
#   "1","pen"
#
# Every cell is quoted; NULL is an empty quoted cell. Tables without rows
# get a "No data available" line instead of a header.
# =============================================================================

from __future__ import annotations

import csv
import io
import re
from datetime import datetime

from dbgateway.services.executor import StatementResult

SECTION_RULE = "=" * 100

_UNSAFE_FILENAME_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def export_filename(project_name: str, exported_at: datetime, extension: str = "csv") -> str:
    """`<project>_database_export_<YYYY-MM-DD>.<ext>`, ASCII alphanumerics only."""
    stem = _UNSAFE_FILENAME_RE.sub("_", project_name).lower()
    return f"{stem}_database_export_{exported_at.date().isoformat()}.{extension}"


def render_json(tables: dict[str, StatementResult]) -> dict[str, list[dict]]:
    return {name: result.rows for name, result in tables.items()}


def render_csv(
    project_name: str,
    tables: dict[str, StatementResult],
    exported_at: datetime,
) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")

    buffer.write(f"Project: {project_name}\n")
    buffer.write(f"Export Date: {exported_at.isoformat()}\n")
    buffer.write("\n")

    for name, result in tables.items():
        buffer.write(f"{SECTION_RULE}\nTable: {name}\n{SECTION_RULE}\n")
        if not result.rows:
            buffer.write("No data available\n\n")
            continue
        writer.writerow(result.columns)
        for row in result.rows:
            writer.writerow(["" if row.get(c) is None else row.get(c) for c in result.columns])
        if result.truncated:
            buffer.write(f"(truncated after {len(result.rows)} rows)\n")
        buffer.write("\n")

    return buffer.getvalue()
