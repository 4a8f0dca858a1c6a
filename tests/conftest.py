"""
Test Configuration and Fixtures
"""
import io

import fitz  # PyMuPDF
import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

from main import app, get_model_client

XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

SPREADSHEET_HEADER = ["Party Name", "Product Name", "Qty", "Item Total Amount"]

STRUCTURED_REPLY = """```json
{
  "Invoices": [{"Serial Number": 1, "Customer Name": "Acme", "Total Amount": 120}],
  "Products": [{"Product Name": "Widget", "Unit Price": 10}],
  "Customers": [{"Customer Name": "Acme", "Phone Number": "555-0100"}]
}
```"""


class RecordingClient:
    """Stands in for GeminiClient; remembers every excerpt it receives."""

    def __init__(self, reply=STRUCTURED_REPLY, error=None):
        self.reply = reply
        self.error = error
        self.excerpts = []

    def generate(self, excerpt):
        self.excerpts.append(excerpt)
        if self.error is not None:
            raise self.error
        return self.reply


def build_xlsx(rows, header=SPREADSHEET_HEADER):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(header)
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_pdf(lines_per_page=50, pages=3):
    doc = fitz.open()
    for page_number in range(pages):
        page = doc.new_page()
        for line in range(lines_per_page):
            page.insert_text((72, 72 + line * 12), f"Page {page_number + 1} line {line + 1} of the report")
    content = doc.tobytes()
    doc.close()
    return content


@pytest.fixture
def fake_model():
    return RecordingClient()


@pytest.fixture
def client(fake_model):
    """Test client with the model dependency replaced by the fake."""
    app.dependency_overrides[get_model_client] = lambda: fake_model
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def xlsx_bytes():
    return build_xlsx([
        ["Acme", "Widget", 3, 120],
        ["Globex", "Gadget", 1, 45.5],
    ])


@pytest.fixture
def pdf_bytes():
    return build_pdf()
