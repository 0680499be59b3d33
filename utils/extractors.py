"""
Text Extractors — file-type-specific text extraction, all local.

Responsibilities:
  - extract_pdf(path)  → str   (via PyMuPDF)
  - extract_pptx(path) → str   (via python-pptx)
  - extract_txt(path)  → str   (plain read, also used for Markdown)
"""

import fitz  # PyMuPDF
from pptx import Presentation


def extract_pdf(file_path: str) -> str:
    """Extract text from a PDF file using PyMuPDF (fitz)."""
    with fitz.open(file_path) as doc:
        pages = [page.get_text() for page in doc]
    return "\n\n".join(text for text in pages if text.strip()).strip()


def extract_pptx(file_path: str) -> str:
    """Extract slide text and speaker notes from a PPTX file."""
    prs = Presentation(file_path)
    slide_texts = []
    for slide in prs.slides:
        shape_texts = [
            shape.text.strip()
            for shape in slide.shapes
            if hasattr(shape, "text") and shape.text.strip()
        ]
        if slide.has_notes_slide:
            frame = slide.notes_slide.notes_text_frame
            if frame is not None and frame.text.strip():
                shape_texts.append(frame.text.strip())
        if shape_texts:
            slide_texts.append("\n".join(shape_texts))
    return "\n\n".join(slide_texts)


def extract_txt(file_path: str) -> str:
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()
