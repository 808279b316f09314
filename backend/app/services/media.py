from __future__ import annotations
from typing import Tuple
from PIL import Image, UnidentifiedImageError
import imagehash
import piexif
import io


ALLOWED_MIME = {"image/jpeg", "image/png"}
EXT_FOR_MIME = {"image/jpeg": "jpg", "image/png": "png"}

def sniff_mime(data: bytes) -> str | None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format == "JPEG":
                return "image/jpeg"
            if img.format == "PNG":
                return "image/png"
            return None
    except (UnidentifiedImageError, OSError):
        return None

def validate_image(data: bytes) -> str:
    """Returns the detected mime type; raises ValueError for anything but an intact JPEG/PNG."""
    mime = sniff_mime(data)
    if mime not in ALLOWED_MIME:
        raise ValueError("Only JPEG and PNG screenshots are accepted")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()  # basic integrity
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValueError("Invalid image file")
    return mime

def analyze_image(data: bytes) -> Tuple[str, str, dict]:
    """
    Returns (mime, phash_hex, exif_summary).
    - phash_hex: perceptual hash hex string, compared by Hamming distance
    - exif_summary: capture time and device when the JPEG carries them, else {}
    """
    mime = validate_image(data)
    with Image.open(io.BytesIO(data)) as img:
        ph = imagehash.phash(img)
    exif = {}
    if mime == "image/jpeg":
        try:
            raw = piexif.load(data)
        except (ValueError, piexif.InvalidImageDataError):
            raw = {}
        exif = _exif_summary(raw)
    return mime, str(ph), exif

def _exif_summary(raw: dict) -> dict:
    out = {}
    taken = (raw.get("Exif") or {}).get(piexif.ExifIFD.DateTimeOriginal) or (raw.get("0th") or {}).get(piexif.ImageIFD.DateTime)
    if isinstance(taken, bytes):
        out["taken_at"] = taken.decode(errors="ignore").replace("\x00", "").strip()
    model = (raw.get("0th") or {}).get(piexif.ImageIFD.Model)
    if isinstance(model, bytes):
        out["device"] = model.decode(errors="ignore").replace("\x00", "").strip()
    return out

def hamming_hex(a: str, b: str) -> int:
    try:
        return bin(int(a, 16) ^ int(b, 16)).count("1")
    except ValueError:
        return 64  # treat as very different if bad data

def ext_for_mime(mime: str) -> str:
    return EXT_FOR_MIME.get(mime, "bin")
