"""
Identity capture.

Joiners photograph their student ID and the name printed on it becomes
their display name. Image handling and OCR belong to whatever provider a
deployment plugs in; this module defines the contract and the text-side
heuristic that picks a name out of raw OCR output.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .errors import InvalidImageError


@dataclass(frozen=True)
class NameExtraction:
    full_name: str
    fallback_name: str = ""
    confidence: float = 0.0

    @property
    def best(self) -> str:
        return self.full_name or self.fallback_name


@runtime_checkable
class IdentityCapture(Protocol):
    """Anything that can turn an ID photo into a best-effort name."""

    def extract(self, image: bytes) -> NameExtraction:
        ...


# Words printed on ID cards that are never part of a person's name
BOILERPLATE = re.compile(
    r"\b(UNIVERSITY|DEEMED|COLLEGE|SCHOOL|INSTITUTE|VALID|TILL|UPTO|AUTHORITY|REPUBLIC|GOVT|"
    r"GOVERNMENT|IDENTITY|CARD|DEPARTMENT|CAMPUS|STUDENT|ENROL\w*|ISSUE\w*|SIGNATURE|"
    r"ADDRESS|COURSE|BATCH|REG\w*|ID)\b"
)
DEMOGRAPHIC = re.compile(r"\b(MALE|FEMALE|DOB|YEAR|MONTH|DATE|BLOOD|GROUP)\b")


def _letters_only(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^A-Z\s]", " ", text.upper())).strip()


def extract_name(raw_text: str, max_length: int = 40) -> NameExtraction:
    """
    Pick the most name-like line out of OCR text.

    Lines of 2-4 words score best; card boilerplate and demographic
    labels are penalised. When no line scores positively the first two
    non-boilerplate words are offered as a fallback.
    """
    best, best_score = "", -999
    for raw_line in str(raw_text or "").splitlines():
        line = _letters_only(raw_line)
        words = line.split()
        if len(line) < 4 or len(line) > max_length or not 2 <= len(words) <= 5:
            continue

        score = 2
        if len(words) <= 4:
            score += 3
        if BOILERPLATE.search(line):
            score -= 8
        if DEMOGRAPHIC.search(line):
            score -= 5

        if score > best_score:
            best, best_score = line, score

    full_name = best[:max_length] if best_score > 0 else ""
    confidence = max(0.0, min(1.0, best_score / 5)) if full_name else 0.0
    return NameExtraction(
        full_name=full_name,
        fallback_name=fallback_name(raw_text),
        confidence=round(confidence, 2),
    )


def fallback_name(raw_text: str, max_length: int = 30) -> str:
    words = [
        w for w in _letters_only(str(raw_text or "")).split()
        if 3 <= len(w) <= 14 and not BOILERPLATE.search(w) and not DEMOGRAPHIC.search(w)
    ]
    return " ".join(words[:2])[:max_length]


class TextNameExtractor:
    """
    IdentityCapture over an OCR callable.

    `ocr` turns image bytes into raw text; the extractor does the rest.
    """

    def __init__(self, ocr):
        self._ocr = ocr

    def extract(self, image: bytes) -> NameExtraction:
        return extract_name(self._ocr(image))


def decode_image_data_url(data_url: str) -> bytes:
    """
    Decode a browser `data:image/...;base64,` capture into raw bytes.

    Raises:
        InvalidImageError: Not an image data URL, or the payload is not base64.
    """
    header, sep, encoded = str(data_url or "").partition(",")
    if not sep or not header.startswith("data:image/") or not header.endswith(";base64"):
        raise InvalidImageError()
    try:
        image = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImageError()
    if not image:
        raise InvalidImageError()
    return image
