"""
Content fingerprints for duplicate detection
"""
import re
import hashlib


def hash_bytes(data: bytes) -> str:
    """sha256 hex digest of raw file content"""
    return hashlib.sha256(data).hexdigest()


def normalize_text_for_hash(text: str) -> str:
    text = text.strip().replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n+", "\n", text)
    return text.lower()


def hash_text(text: str) -> str:
    """sha256 of the normalized text, so pasted copies with different spacing match"""
    return hashlib.sha256(normalize_text_for_hash(text).encode("utf-8")).hexdigest()


def short_hash(digest: str) -> str:
    return digest[:8]
