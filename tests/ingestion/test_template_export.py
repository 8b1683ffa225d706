"""
Tests for BulkTemplateExporter -- the downloadable bulk import template.
"""

import io

import openpyxl
import pytest

from registration_ingestion.adapters.csv_adapter import CsvSourceAdapter
from registration_ingestion.services.template_export import BulkTemplateExporter
from registration_kernel.exceptions import TemplateNotFoundError, UnsupportedFileFormatError


@pytest.fixture
def exporter(templates):
    return BulkTemplateExporter(templates)


class TestXlsxTemplate:

    def test_layout(self, exporter):
        wb = openpyxl.load_workbook(io.BytesIO(exporter.generate_template("customers")))
        sheet = wb["Data"]
        rows = [list(r) for r in sheet.iter_rows(min_row=1, max_row=3, values_only=True)]

        assert rows[0] == ["CUSTOMER_CODE", "STORE", "NAME", "SINCE"]
        assert rows[1] == ["Customer code", "Store", "Company name", "Customer since"]
        assert rows[2] == [
            "string (required, key)",
            "string (required, key)",
            "string (required)",
            "date",
        ]
        assert sheet.freeze_panes == "A5"

    def test_metadata_sheet_is_hidden(self, exporter):
        wb = openpyxl.load_workbook(io.BytesIO(exporter.generate_template("customers")))
        meta = wb["_metadata"]

        assert meta.sheet_state == "hidden"
        assert dict(meta.iter_rows(values_only=True)) == {
            "template_id": "customers",
            "template_name": "Customers",
            "table_name": "SA1",
            "key_fields": "CUSTOMER_CODE,STORE",
        }

    def test_examples_row(self, exporter):
        wb = openpyxl.load_workbook(io.BytesIO(exporter.generate_template("products")))
        example = [c.value for c in wb["Data"][4]]
        assert example[:3] == ["PRD-0001", "Bolt M8", "10.00"]


class TestCsvTemplate:

    def test_layout(self, exporter):
        text = exporter.generate_template("products", "csv").decode("utf-8")
        lines = text.splitlines()

        assert lines[0] == "# template_id: products"
        assert lines[1] == "PRODUCT_CODE,DESCRIPTION,PRICE,UNIT,ACTIVE"
        assert lines[2] == "# Product code,Description,Unit price,Unit of measure,Active"
        assert lines[3] == (
            '# "string (required, key)",string (required),number,string,boolean'
        )
        assert lines[4] == "# PRD-0001,Bolt M8,10.00,UN,true"

    def test_template_reads_back_empty(self, exporter, tmp_path):
        path = tmp_path / "products.csv"
        path.write_bytes(exporter.generate_template("products", "CSV"))

        adapter = CsvSourceAdapter()
        layout = adapter.inspect(path, {})

        assert list(adapter.read(path, {})) == []
        assert layout.template_id == "products"
        assert layout.columns == ("PRODUCT_CODE", "DESCRIPTION", "PRICE", "UNIT", "ACTIVE")


class TestErrors:

    def test_unknown_format(self, exporter):
        with pytest.raises(UnsupportedFileFormatError):
            exporter.generate_template("products", "ods")

    def test_unknown_template(self, exporter):
        with pytest.raises(TemplateNotFoundError):
            exporter.generate_template("nope", "csv")
