# =============================================================================
# Unit Tests — Database export rendering
# =============================================================================

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone

from dbgateway.services.executor import StatementResult
from dbgateway.services.export import SECTION_RULE, export_filename, render_csv, render_json

EXPORTED_AT = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)


def _tables():
    return {
        "items": StatementResult(
            rows=[
                {"id": 1, "name": 'pen, "blue"', "note": None},
                {"id": 2, "name": "ink", "note": "refill"},
            ],
            columns=["id", "name", "note"],
            row_count=2,
            elapsed_ms=1,
        ),
        "empty": StatementResult(rows=[], columns=["id"], row_count=0, elapsed_ms=0),
    }


class TestRenderCsv:
    def test_layout(self):
        lines = render_csv("Shop", _tables(), EXPORTED_AT).split("\n")

        assert lines[0] == "Project: Shop"
        assert lines[1] == "Export Date: 2026-10-19T08:30:00+00:00"
        assert lines[3:6] == [SECTION_RULE, "Table: items", SECTION_RULE]
        assert lines[6] == '"id","name","note"'
        assert "No data available" in lines

    def test_cells_round_trip_through_a_csv_reader(self):
        text = render_csv("Shop", _tables(), EXPORTED_AT)
        section = text.split("Table: items\n" + SECTION_RULE + "\n", 1)[1].split("\n\n", 1)[0]
        rows = list(csv.reader(io.StringIO(section)))

        assert rows[0] == ["id", "name", "note"]
        assert rows[1] == ["1", 'pen, "blue"', ""]
        assert rows[2] == ["2", "ink", "refill"]

    def test_truncated_table_is_flagged(self):
        tables = {
            "big": StatementResult(
                rows=[{"id": 1}], columns=["id"], row_count=1, elapsed_ms=0, truncated=True,
            ),
        }
        assert "(truncated after 1 rows)" in render_csv("Shop", tables, EXPORTED_AT)


class TestRenderJson:
    def test_rows_by_table(self):
        assert render_json(_tables()) == {
            "items": [
                {"id": 1, "name": 'pen, "blue"', "note": None},
                {"id": 2, "name": "ink", "note": "refill"},
            ],
            "empty": [],
        }


class TestExportFilename:
    def test_unsafe_characters_replaced(self):
        assert (
            export_filename("My Shop/2026", EXPORTED_AT)
            == "my_shop_2026_database_export_2026-10-19.csv"
        )
