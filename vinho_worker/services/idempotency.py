"""
Idempotency keys for scan jobs.

Two jobs carrying the same image URL and OCR text describe the same
bottle photo; the key lets the second one reuse the first one's result
instead of paying for another extraction.
"""

import hashlib
from typing import Optional


def compute_idempotency_key(image_url: str, ocr_text: Optional[str]) -> str:
    """SHA-256 hex digest of "image_url|ocr_text" (missing OCR text hashes as "")."""
    payload = f"{image_url}|{ocr_text or ''}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
