import os
import io
import re
import json
import base64
import logging
from typing import Callable, Dict, List, Optional

import fitz  # PyMuPDF
import requests
from dotenv import load_dotenv
from openpyxl import load_workbook

load_dotenv()

# ---------------------------
# Logging Setup
# ---------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ---------------------------
# Constants
# ---------------------------
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PDF_MIME_TYPE = "application/pdf"

ALLOWED_MIME_TYPES = [
    XLSX_MIME_TYPE,
    PDF_MIME_TYPE,
    "image/png",
    "image/jpeg",
]

MAX_SPREADSHEET_ROWS = 20
MAX_PDF_CHARS = 1000

PLACEHOLDER_EXCERPT = "Limited summary content due to file type restrictions."

EXTRACTION_PROMPT = """
Extract the following information in JSON format:
- Invoices: { Serial Number, Customer Name, Product Name, Qty, Tax, Total Amount, Date }
- Products: { Product Name, Category, Unit Price, Tax, Price with Tax, Stock Quantity }
- Customers: { Customer Name, Phone Number, Total Purchase Amount }
Ensure the response follows strict JSON formatting.
"""


def is_allowed_mime_type(mime_type: Optional[str]) -> bool:
    return mime_type in ALLOWED_MIME_TYPES


# ---------------------------
# Excerpt Extraction
# ---------------------------
def _cell_text(value) -> str:
    # empty, zero and false cells all count as missing
    if not value:
        return "N/A"
    if isinstance(value, bool):
        return "true"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def read_spreadsheet_rows(content: bytes) -> List[Dict]:
    """Read the first sheet as row records keyed by the header row."""
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        try:
            sheet = workbook.worksheets[0]
            header = None
            rows = []
            for values in sheet.iter_rows(values_only=True):
                if all(v is None or v == "" for v in values):
                    continue
                if header is None:
                    header = [str(v) if v is not None else None for v in values]
                    continue
                rows.append({name: value for name, value in zip(header, values) if name is not None})
        finally:
            workbook.close()
        logger.info(f"Read {len(rows)} rows from spreadsheet.")
        return rows
    except Exception as e:
        logger.error(f"Failed to read spreadsheet: {e}")
        raise RuntimeError(f"Failed to read spreadsheet: {e}")


def extract_spreadsheet_excerpt(content: bytes) -> str:
    rows = read_spreadsheet_rows(content)[:MAX_SPREADSHEET_ROWS]
    lines = [
        f"Invoice {index} - Customer: {_cell_text(row.get('Party Name'))}, "
        f"Product: {_cell_text(row.get('Product Name'))}, "
        f"Qty: {_cell_text(row.get('Qty'))}, "
        f"Total: {_cell_text(row.get('Item Total Amount'))}"
        for index, row in enumerate(rows, start=1)
    ]
    return "\n".join(lines)


def extract_text_from_pdf(content: bytes) -> str:
    try:
        with fitz.open(stream=content, filetype="pdf") as doc:
            text = "\n".join([page.get_text() for page in doc])
        logger.info(f"Extracted {len(text)} characters from PDF.")
        return text
    except Exception as e:
        logger.error(f"Failed to extract text from PDF: {e}")
        raise RuntimeError(f"Failed to extract text from PDF: {e}")


def extract_pdf_excerpt(content: bytes) -> str:
    return extract_text_from_pdf(content)[:MAX_PDF_CHARS]


# Images are accepted but never decoded; they fall through to the placeholder.
EXTRACTORS: Dict[str, Callable[[bytes], str]] = {
    XLSX_MIME_TYPE: extract_spreadsheet_excerpt,
    PDF_MIME_TYPE: extract_pdf_excerpt,
}


def extract_excerpt(content: bytes, mime_type: str) -> str:
    extractor = EXTRACTORS.get(mime_type)
    if extractor is None:
        return PLACEHOLDER_EXCERPT
    return extractor(content)


def encode_excerpt(excerpt: str) -> str:
    return base64.b64encode(excerpt.encode("utf-8")).decode("ascii")


# ---------------------------
# Gemini API Integration
# ---------------------------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")


class GeminiClient:
    """Sends an excerpt plus the extraction prompt to Gemini and returns the reply text.

    Anything with a ``generate(excerpt) -> str`` method can stand in for it.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = GEMINI_MODEL, timeout: int = 30):
        self.api_key = api_key if api_key is not None else GEMINI_API_KEY
        self.model = model
        self.timeout = timeout
        self.api_url = f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
        self.headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key or ""}
        self.session = requests.Session()

    def build_payload(self, excerpt: str) -> Dict:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inlineData": {"mimeType": "text/plain", "data": encode_excerpt(excerpt)}},
                        {"text": EXTRACTION_PROMPT},
                    ],
                }
            ]
        }

    def generate(self, excerpt: str) -> str:
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY is not set in environment variables.")

        try:
            response = self.session.post(
                self.api_url,
                headers=self.headers,
                json=self.build_payload(excerpt),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except Exception as e:
            logger.error(f"Gemini request failed: {e}")
            raise RuntimeError(f"Gemini request failed: {e}")


# ---------------------------
# Reply Parsing
# ---------------------------
def clean_reply(text: str) -> str:
    text = re.sub(r"```json|```", "", text).strip()
    # greedy: spans from the first "{" to the last "}"
    match = re.search(r"{[\s\S]*}", text)
    return match.group(0) if match else text


def empty_result(raw_response: Optional[str] = None) -> Dict:
    return {"invoices": [], "products": [], "customers": [], "rawResponse": raw_response}


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def parse_reply(text: str) -> Dict:
    cleaned = clean_reply(text)
    try:
        data = json.loads(cleaned, parse_constant=_reject_constant)
        if data is None:
            raise ValueError("null has no fields")
    except ValueError:
        logger.warning("Response is not valid JSON. Returning raw text instead.")
        return empty_result(cleaned)

    # arrays, strings, numbers and booleans carry no named collections
    if not isinstance(data, dict):
        return empty_result()

    return {
        "invoices": data.get("Invoices") or [],
        "products": data.get("Products") or [],
        "customers": data.get("Customers") or [],
        "rawResponse": None,
    }


# ---------------------------
# Final Orchestrator Function
# ---------------------------
def process_upload(content: bytes, mime_type: str, client) -> Dict:
    excerpt = extract_excerpt(content, mime_type)
    logger.info(f"Built {len(excerpt)} character excerpt for {mime_type}.")

    response_text = client.generate(excerpt)
    logger.info(f"Raw API Response: {response_text}")

    return parse_reply(response_text)
