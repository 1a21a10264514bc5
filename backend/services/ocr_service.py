"""
OCR Service: local text pass for receipt images.

Runs Tesseract over the image and parses the text with line-oriented
heuristics into raw line items.  This is the fallback path used when the
remote vision model is unavailable, slow, or returns nothing usable, so it
must work without network access.
"""
import io
import logging
import re
import string
from typing import Optional

import numpy as np
import pytesseract
from PIL import Image, ImageEnhance, ImageFilter, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from models.schemas import ImageQuality, QualityIssue
from services.categories import guess_category_from_item_name
from services.normalize_service import clean_description, normalize_amount

logger = logging.getLogger("pocketbook.ocr")

register_heif_opener()


class OcrUnavailableError(RuntimeError):
    """Raised when the local OCR pass cannot run (no Tesseract, unreadable image)."""
    pass


def preprocess_image(image: "Image.Image") -> "Image.Image":
    """
    Improve OCR accuracy by preprocessing the receipt image:
    - Convert to grayscale
    - Upscale if small
    - Invert dark-background bands (white-on-black totals)
    - Enhance contrast and sharpen
    """
    img = image.convert("L")

    w, h = img.size
    if w < 800:
        scale = 800 / w
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)

    # Horizontal bands averaging below 80 are mostly dark; invert them so
    # Tesseract sees black-on-white text.
    arr = np.array(img)
    band_height = max(1, arr.shape[0] // 40)
    for y in range(0, arr.shape[0], band_height):
        band = arr[y:y + band_height, :]
        if band.mean() < 80:
            arr[y:y + band_height, :] = 255 - band
    img = Image.fromarray(arr)

    img = ImageEnhance.Contrast(img).enhance(2.0)
    img = img.filter(ImageFilter.SHARPEN)
    return img


def extract_text_from_image(image_bytes: bytes) -> str:
    """
    Run Tesseract OCR on image bytes, return raw text.
    Supports JPEG, PNG, WEBP and HEIC/HEIF.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image = ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError) as e:
        raise OcrUnavailableError(f"Cannot open image: {e}") from e

    if image.mode not in ("RGB", "L", "RGBA"):
        image = image.convert("RGB")

    processed = preprocess_image(image)
    try:
        text = pytesseract.image_to_string(processed, config="--psm 6")
    except pytesseract.TesseractNotFoundError as e:
        raise OcrUnavailableError("tesseract binary not found in PATH") from e
    except pytesseract.TesseractError as e:
        raise OcrUnavailableError(f"Tesseract failed: {e}") from e
    return text.strip()


def detect_media_type(image_bytes: bytes) -> str:
    """Media type from magic bytes; unknown formats are re-encoded as JPEG."""
    if image_bytes[:4] == b'\x89PNG':
        return "image/png"
    if image_bytes[:3] == b'\xff\xd8\xff':
        return "image/jpeg"
    if image_bytes[:4] == b'RIFF' and image_bytes[8:12] == b'WEBP':
        return "image/webp"
    if image_bytes[:6] in (b'GIF87a', b'GIF89a'):
        return "image/gif"
    if image_bytes[:4] == b'%PDF':
        return "application/pdf"
    return "application/octet-stream"


def prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Fit an image within vision-model limits: long side ≤ 1568px, JPEG.
    PNG/JPEG/WEBP/GIF that cannot be decoded are sent as-is.
    Returns (image_bytes, media_type).
    """
    media_type = detect_media_type(image_bytes)
    if media_type == "application/pdf":
        return image_bytes, media_type

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Image prep failed (%s), sending original", e)
        if media_type == "application/octet-stream":
            media_type = "image/jpeg"
        return image_bytes, media_type

    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    max_dim = 1568
    w, h = img.size
    long_side = max(w, h)
    if long_side > max_dim:
        scale = max_dim / long_side
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
        logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=92, optimize=True)
    return buf.getvalue(), "image/jpeg"


# ── Image quality ─────────────────────────────────────────────────────────────

QUALITY_MIN_SIDE = 600
QUALITY_ANALYSIS_MAX_DIM = 800


def analyze_image_quality(image_bytes: bytes) -> ImageQuality:
    """
    Score a receipt photo 0-100 from resolution, brightness, contrast and
    sharpness, listing anything likely to hurt extraction.

    Advisory only: images that cannot be decoded get a neutral passing score.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        width, height = img.size
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        logger.debug("Quality analysis skipped: %s", e)
        return ImageQuality()

    img.thumbnail((QUALITY_ANALYSIS_MAX_DIM, QUALITY_ANALYSIS_MAX_DIM))
    gray = np.asarray(img, dtype=np.float64).mean(axis=2)

    brightness = gray.mean() / 255 * 100
    contrast = gray.std() / 255 * 100
    # mean absolute 4-neighbour Laplacian over the interior
    lap = np.abs(4 * gray[1:-1, 1:-1] - gray[:-2, 1:-1] - gray[2:, 1:-1]
                 - gray[1:-1, :-2] - gray[1:-1, 2:])
    sharpness = lap.mean() / 255 * 100 if lap.size else 0.0

    issues = []
    if width < QUALITY_MIN_SIDE or height < QUALITY_MIN_SIDE:
        issues.append(QualityIssue(
            type="too_small", severity="high",
            message="Image resolution is too low",
            suggestion="Try taking a closer photo or use a better camera",
        ))
    if brightness < 60:
        issues.append(QualityIssue(
            type="dark", severity="high" if brightness < 40 else "medium",
            message="Image is too dark",
            suggestion="Try using better lighting or flash",
        ))
    if contrast < 30:
        issues.append(QualityIssue(
            type="low_contrast", severity="high" if contrast < 20 else "medium",
            message="Image has low contrast",
            suggestion="Try flattening the receipt and avoiding shadows",
        ))
    if sharpness < 15:
        issues.append(QualityIssue(
            type="blur", severity="high" if sharpness < 10 else "medium",
            message="Image appears blurry",
            suggestion="Hold the camera steady and make sure the receipt is in focus",
        ))

    score = round(
        min(100.0, max(0.0, (brightness - 40) * 2)) * 0.25
        + min(100.0, contrast * 2) * 0.25
        + min(100.0, sharpness * 4) * 0.35
        + min(100.0, min(width, height) / 10) * 0.15
    )
    acceptable = score >= 50 and not any(i.severity == "high" for i in issues)
    return ImageQuality(score=int(score), acceptable=acceptable, issues=issues)


# ── Receipt Text Parser ───────────────────────────────────────────────────────

# Lines mentioning any of these are totals, payment or store metadata.
SKIP_LINE_RE = re.compile(
    r'(?i)\b(?:sub\s*-?\s*total|total|tax|gst|vat|change|cash|card|visa|mastercard|amex|'
    r'debit|credit|payment|paid|balance|tel|phone|fax|receipt|invoice|thank|welcome|'
    r'customer|cashier|transaction|tran|auth|approved|date|time|loyalty|points|member)\b'
    r'|www\.|\.com\b|store\s*#|store:'
)

# Candidate descriptions that are never products.
NON_PRODUCT_RE = re.compile(
    r'(?i)\b(?:sub\s*-?\s*total|total|tax|loyalty|cashier|change|balance|discount|savings|'
    r'coupon|tip|gratuity|receipt|store|customer|thank you|amount|price|quantity|description)\b'
)

PURE_SYMBOLS_RE = re.compile(r'^[\d\W_]+$')

# "ITEM NAME   4.99" / "ITEM NAME $4.99 A"  (optional one-letter tax flag)
LINE_END_AMOUNT_RE = re.compile(
    r'^(?P<desc>.+?)\s+[$€£₹]?\s*(?P<amount>\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})\s*[A-Z]?$'
)
ANY_AMOUNT_RE  = re.compile(r'[$€£₹]?\s*(\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})')
PRICE_ONLY_RE  = re.compile(r'^[$€£₹]?\s*(\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})\s*$')

# TOTAL_RE: "Total <up to 25 non-digit chars> $123.45"; AMOUNT: is a synonym.
TOTAL_RE = re.compile(r'(?i)(?:\btotal\b[^\d\n]{0,25}?|amount:)\s*[$€£₹]?\s*(\d[\d,]*\.\d{2})')
DATE_NUMERIC_RE = re.compile(r'\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})\b')
DATE_ISO_RE     = re.compile(r'\b(\d{4})-(\d{2})-(\d{2})\b')
MERCHANT_RE     = re.compile(r"^[A-Za-z][A-Za-z\s&'.\-]{2,40}$")


class ParsedReceipt:
    def __init__(self):
        self.merchant: Optional[str] = None
        self.receipt_date: Optional[str] = None   # ISO, not yet range-checked
        self.total: Optional[str] = None
        self.raw_items: list[dict] = []           # [{description, amount, date, category, payment_method}]
        self.raw_text: str = ""


def is_skip_line(line: str) -> bool:
    """True for lines that can never hold a purchasable item."""
    if len(line) < 3:
        return True
    if PURE_SYMBOLS_RE.match(line):
        return True
    return bool(SKIP_LINE_RE.search(line))


def is_non_item_text(description: str) -> bool:
    """Reject candidate descriptions that are too short/long, non-alphabetic or known non-products."""
    if len(description) < 2 or len(description) > 50:
        return True
    if not any(c.isalpha() for c in description):
        return True
    return bool(NON_PRODUCT_RE.search(description))


def extract_total(text: str) -> Optional[str]:
    """Grand total: the LAST total-like amount on the receipt."""
    totals = TOTAL_RE.findall(text)
    if not totals:
        return None
    return totals[-1].replace(",", "")


def _format_numeric_date(month: int, day: int, year: int) -> Optional[str]:
    if year < 100:
        year = 2000 + year if year < 80 else 1900 + year
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return None
    return f"{year:04d}-{month:02d}-{day:02d}"


def extract_receipt_date(lines: list[str]) -> Optional[str]:
    """
    Find the purchase date.  Lines labelled "date" are tried first, then any
    line.  Returns ISO YYYY-MM-DD (year window is checked by normalization).
    """
    labelled = [l for l in lines if 'date' in l.lower()]
    for line in labelled + lines:
        m = DATE_ISO_RE.search(line)
        if m:
            iso = _format_numeric_date(int(m.group(2)), int(m.group(3)), int(m.group(1)))
            if iso:
                return iso
        m = DATE_NUMERIC_RE.search(line)
        if m:
            iso = _format_numeric_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            if iso:
                return iso
    return None


def _detect_merchant(lines: list[str]) -> Optional[str]:
    """First header line (top 5) that looks like a business name."""
    for line in lines[:5]:
        if MERCHANT_RE.match(line) and not is_skip_line(line):
            return string.capwords(line)
    return None


def _make_item(description: str, amount: str, receipt_date: Optional[str]) -> Optional[dict]:
    name = clean_description(description)
    if is_non_item_text(name):
        return None
    amount = amount.replace(",", "")
    # zero, and amounts too large to represent, come back as 0.00
    if normalize_amount(amount) <= 0:
        return None
    return {
        "description": name,
        "amount": amount,
        "date": receipt_date,
        "category": guess_category_from_item_name(name),
        "payment_method": "Card",
    }


def parse_receipt_text(text: str) -> ParsedReceipt:
    """
    Parse OCR text into raw line items.

    For each line that survives the skip list, look for an amount anchored at
    the line end; failing that, any amount in the right half of the line;
    failing that, a description line followed by a price-only line.
    """
    result = ParsedReceipt()
    result.raw_text = text or ""
    lines = [l.strip() for l in result.raw_text.split('\n') if l.strip()]

    result.merchant = _detect_merchant(lines)
    result.receipt_date = extract_receipt_date(lines)
    result.total = extract_total(result.raw_text)

    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if is_skip_line(line):
            continue

        m = LINE_END_AMOUNT_RE.match(line)
        if m:
            item = _make_item(m.group('desc'), m.group('amount'), result.receipt_date)
            if item:
                result.raw_items.append(item)
            continue

        m = ANY_AMOUNT_RE.search(line)
        if m and m.start() > len(line) / 2:
            item = _make_item(line[:m.start()], m.group(1), result.receipt_date)
            if item:
                result.raw_items.append(item)
            continue

        # Description on this line, price alone on the next
        if i < len(lines):
            price = PRICE_ONLY_RE.match(lines[i])
            if price:
                item = _make_item(line, price.group(1), result.receipt_date)
                if item:
                    result.raw_items.append(item)
                    i += 1

    logger.debug("Parsed %d candidate items from %d lines", len(result.raw_items), len(lines))
    return result
