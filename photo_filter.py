import io
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 20 * 1024 * 1024
MAX_PROPORTION = 6
ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP", "HEIF", "MPO"}
GPS_IFD = 0x8825

# Коды отказа до вызова классификатора
UNSUPPORTED_FORMAT = "unsupported_format"
FILE_TOO_LARGE = "file_too_large"
BAD_PROPORTIONS = "bad_proportions"
UNREADABLE = "unreadable"


def _dms_to_degrees(dms, ref: Optional[str]) -> Optional[float]:
    try:
        degrees, minutes, seconds = (float(part) for part in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    value = degrees + minutes / 60 + seconds / 3600
    if ref in ("S", "W"):
        value = -value
    return value


def extract_gps(image_bytes: bytes) -> Optional[Tuple[float, float]]:
    """GPS coordinates from EXIF as (lat, lng), or None when absent or unreadable."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            gps = img.getexif().get_ifd(GPS_IFD)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.info(f"[exif] no metadata: {e}")
        return None
    if not gps or 2 not in gps or 4 not in gps:
        return None

    lat = _dms_to_degrees(gps[2], gps.get(1))
    lng = _dms_to_degrees(gps[4], gps.get(3))
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180) or (lat == 0 and lng == 0):
        return None
    logger.info(f"[exif] GPS found: {lat:.4f}, {lng:.4f}")
    return lat, lng


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


def check_photo(image_bytes: bytes) -> Optional[str]:
    """Cheap validation before the classifier; returns a failure code or None."""
    if len(image_bytes) > MAX_FILE_SIZE:
        return FILE_TOO_LARGE
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = img.format
            width, height = img.size
    except (UnidentifiedImageError, OSError) as e:
        logger.info(f"[check_photo] cannot open image: {e}")
        return UNREADABLE
    if fmt not in ALLOWED_FORMATS:
        return UNSUPPORTED_FORMAT
    if min(width, height) == 0 or max(width, height) / min(width, height) > MAX_PROPORTION:
        return BAD_PROPORTIONS
    return None


def normalize_image(image_bytes: bytes) -> bytes:
    """Orientation-corrected RGB PNG, the format sent to the classifier."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode != "RGB":
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, format="PNG")
    return out.getvalue()


def to_hd_jpeg(image_bytes: bytes) -> bytes:
    """Maximum-quality JPEG for the private full-size copy."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        if img.mode != "RGB":
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=100, subsampling=0)
    return out.getvalue()
