"""Tests for idempotency keys."""

import hashlib

from vinho_worker.services.idempotency import compute_idempotency_key


class TestComputeIdempotencyKey:
    def test_is_sha256_of_url_and_ocr(self):
        """Key is the hex SHA-256 of "url|ocr"."""
        expected = hashlib.sha256(b"https://x.supabase.co/a.jpg|CHATEAU X").hexdigest()
        assert compute_idempotency_key("https://x.supabase.co/a.jpg", "CHATEAU X") == expected

    def test_fixed_length_hex(self):
        key = compute_idempotency_key("https://x.supabase.co/a.jpg", None)
        assert len(key) == 64
        int(key, 16)

    def test_deterministic(self):
        a = compute_idempotency_key("https://x.supabase.co/a.jpg", "text")
        b = compute_idempotency_key("https://x.supabase.co/a.jpg", "text")
        assert a == b

    def test_missing_ocr_hashes_as_empty_string(self):
        """None and "" OCR text produce the same key."""
        assert compute_idempotency_key("u", None) == compute_idempotency_key("u", "")

    def test_different_ocr_different_key(self):
        assert compute_idempotency_key("u", "a") != compute_idempotency_key("u", "b")
