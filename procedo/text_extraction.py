import io
import re
from functools import lru_cache
from typing import Any, Dict

import pypdf
import tiktoken
from pdfminer.high_level import extract_text
from pdfminer.layout import LAParams


class TextExtractionError(Exception):
    """Raised when a PDF cannot be parsed or yields no text"""


@lru_cache()
def _get_encoding():
    return tiktoken.encoding_for_model("gpt-4")


def count_tokens(text: str) -> int:
    """Count tokens in text"""
    return len(_get_encoding().encode(text))


def extract_pdf_text(data: bytes) -> str:
    """Extract raw text from an in-memory PDF"""
    try:
        return extract_text(io.BytesIO(data), laparams=LAParams())
    except Exception as e:
        raise TextExtractionError(f"Could not extract text from PDF: {e}") from e


def count_pages(data: bytes) -> int:
    try:
        return len(pypdf.PdfReader(io.BytesIO(data)).pages)
    except Exception as e:
        print(f"[PDF] page count failed – {e}")
        return 0


class TextCleaner:
    """Strip page furniture (page numbers, running headers/footers) from order text"""

    PAGE_NUMBER_PATTERNS = [
        r'^\s*\d+\s*$',  # Just a number
        r'^\s*Page\s+\d+(\s+of\s+\d+)?\s*$',  # "Page X" / "Page X of Y"
        r'^\s*\d+\s*of\s*\d+\s*$',  # "X of Y"
        r'^\s*-\s*\d+\s*-\s*$',  # "- X -"
    ]

    def clean_extracted_text(self, raw_text: str) -> Dict[str, Any]:
        """
        Clean text by removing:
        - Page numbers
        - Running headers and footers (short lines repeated on many pages)
        """
        lines = raw_text.split('\n')
        cleaned_lines = []
        removed_elements = []

        line_frequency: Dict[str, int] = {}
        for line in lines:
            stripped = line.strip()
            if stripped and len(stripped) > 3:
                line_frequency[stripped] = line_frequency.get(stripped, 0) + 1

        repeated_lines = {line for line, count in line_frequency.items() if count > 2 and len(line) < 100}

        for line in lines:
            stripped = line.strip()

            if not stripped:
                cleaned_lines.append("")
                continue

            if any(re.match(pattern, stripped, re.IGNORECASE) for pattern in self.PAGE_NUMBER_PATTERNS):
                removed_elements.append(f"Page number: {stripped}")
                continue

            if stripped in repeated_lines:
                removed_elements.append(f"Repeated content: {stripped}")
                continue

            cleaned_lines.append(line)

        clean_text = '\n'.join(cleaned_lines)
        clean_text = re.sub(r'\n{3,}', '\n\n', clean_text)
        clean_text = re.sub(r'[ \t]+', ' ', clean_text)
        clean_text = clean_text.strip()

        return {
            "clean_text": clean_text,
            "removed_elements": removed_elements,
            "cleaning_report": f"Removed {len(removed_elements)} non-content elements",
            "token_count": count_tokens(clean_text) if clean_text else 0,
        }


def extract_clean_text(data: bytes) -> str:
    """
    Extract and clean the text of an uploaded PDF.

    Raises TextExtractionError when the document has no usable text.
    """
    raw_text = extract_pdf_text(data)
    if not raw_text or not raw_text.strip():
        raise TextExtractionError("Could not extract text from PDF")

    result = TextCleaner().clean_extracted_text(raw_text)
    print(f"[Extractor] raw {len(raw_text)} chars -> clean {len(result['clean_text'])} chars, "
          f"{result['token_count']} tokens ({result['cleaning_report']})")

    if not result["clean_text"]:
        raise TextExtractionError("Could not extract text from PDF")
    return result["clean_text"]
