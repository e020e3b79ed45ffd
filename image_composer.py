# image_composer.py: фото слева, текстовая панель справа
import io
import logging
from functools import lru_cache
from typing import List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps

from schemas import Identification

logger = logging.getLogger(__name__)

MAX_HEIGHT = 650
PANEL_WIDTH = 480
BACKGROUND = (26, 26, 26)
DIVIDER = (51, 51, 51)
PADDING = 20

BADGE_COLORS = {
    "level_subspecies": (21, 101, 192),
    "level_species": (69, 90, 100),
    "sex": (106, 27, 154),
    "life_stage": (230, 81, 0),
    "morph": (173, 20, 87),
}

Badge = Tuple[str, Tuple[int, int, int]]


@lru_cache(maxsize=None)
def _font(size: int, bold: bool = False, italic: bool = False) -> ImageFont.ImageFont:
    name = "DejaVuSans"
    if bold:
        name += "-Bold"
    elif italic:
        name += "-Oblique"
    try:
        return ImageFont.truetype(f"{name}.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def build_badges(ident: Identification) -> List[Badge]:
    badges: List[Badge] = []
    if ident.valid_subspecies:
        badges.append(("SUBSPECIES", BADGE_COLORS["level_subspecies"]))
    elif ident.taxonomy.species:
        badges.append(("SPECIES", BADGE_COLORS["level_species"]))

    sex = (ident.sex or "").lower()
    if sex and "unknown" not in sex:
        if "female" in sex:
            badges.append(("FEMALE", BADGE_COLORS["sex"]))
        elif "male" in sex:
            badges.append(("MALE", BADGE_COLORS["sex"]))

    stage = ident.life_stage or ""
    if stage and "unknown" not in stage.lower():
        badges.append((stage.split()[0].upper(), BADGE_COLORS["life_stage"]))

    if ident.morph:
        badges.append((ident.morph.upper(), BADGE_COLORS["morph"]))
    return badges


def _wrap(draw: ImageDraw.ImageDraw, text: str, font, width: int) -> List[str]:
    lines: List[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}".strip()
        if draw.textlength(candidate, font=font) <= width or not current:
            current = candidate
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def _draw_panel(ident: Identification, height: int) -> Image.Image:
    panel = Image.new("RGB", (PANEL_WIDTH, height), BACKGROUND)
    draw = ImageDraw.Draw(panel)
    text_width = PANEL_WIDTH - 2 * PADDING

    # --- Бейджи, по два в ряд
    badges = build_badges(ident)
    badge_font = _font(14, bold=True)
    header_y = 25
    for index, (label, color) in enumerate(badges):
        row, col = divmod(index, 2)
        x = PADDING + col * 180
        y = header_y + row * 40
        w = int(draw.textlength(label, font=badge_font)) + 24
        draw.rounded_rectangle((x, y, x + w, y + 32), radius=16, fill=color)
        draw.text((x + w / 2, y + 16), label, font=badge_font, fill="white", anchor="mm")

    body_y = header_y + max(1, (len(badges) + 1) // 2) * 40 + 15
    draw.line((PADDING, body_y - 5, PANEL_WIDTH - PADDING, body_y - 5), fill=DIVIDER, width=1)

    # --- Названия
    y = body_y + 10
    title_font = _font(32, bold=True)
    for line in _wrap(draw, ident.common_name or ident.scientific_name, title_font, text_width)[:2]:
        draw.text((PADDING, y), line, font=title_font, fill="white")
        y += 40

    sci_font = _font(20, italic=True)
    draw.text((PADDING, y + 5), ident.scientific_name, font=sci_font, fill=(187, 187, 187))
    y += 45

    subspecies = ident.valid_subspecies
    if subspecies:
        draw.text((PADDING, y + 10), "SUBSPECIES", font=_font(12, bold=True), fill=(102, 102, 102))
        draw.text((PADDING, y + 30), subspecies, font=_font(22, italic=True), fill=(153, 153, 153))
    return panel


def render_composite(photo: bytes, ident: Identification) -> Optional[bytes]:
    """Reference photo and text panel side by side as JPEG, or None on failure."""
    try:
        with Image.open(io.BytesIO(photo)) as src:
            src = ImageOps.exif_transpose(src).convert("RGB")
            width, height = src.size
            target_h = min(height, MAX_HEIGHT)
            target_w = max(1, round(target_h * width / height))
            resized = src.resize((target_w, target_h), Image.LANCZOS)

        canvas = Image.new("RGB", (target_w + PANEL_WIDTH, target_h), BACKGROUND)
        canvas.paste(resized, (0, 0))
        canvas.paste(_draw_panel(ident, target_h), (target_w, 0))

        out = io.BytesIO()
        canvas.save(out, format="JPEG", quality=90)
        logger.info(f"[composite] created {canvas.width}x{canvas.height} for {ident.scientific_name}")
        return out.getvalue()
    except Exception as e:
        logger.error(f"[composite] failed for {ident.scientific_name}: {e}")
        return None
