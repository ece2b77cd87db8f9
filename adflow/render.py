from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

from .models import AdCopy


AspectRatio = Tuple[int, int]

# Feed (4:5) and Stories/Reels (9:16) placements, plus square.
PLACEMENT_RATIOS: Dict[str, AspectRatio] = {
    "1:1": (1, 1),
    "4:5": (4, 5),
    "9:16": (9, 16),
}

Color = Tuple[int, int, int]


@dataclass
class PreviewStyle:
    headline_color: Color = (249, 115, 22)
    body_color: Color = (255, 255, 255)
    font_path: Optional[str] = None
    call_to_action: str = "Learn more"


def resize_to_aspect_ratio(img: Image.Image, ratio: AspectRatio, base_size: int = 1080) -> Image.Image:
    """
    Fit the image into a canvas of the requested aspect ratio, letterboxing
    with black rather than cropping so nothing in the creative is lost.
    """
    target_w, target_h = ratio
    if target_w >= target_h:
        width = base_size
        height = int(base_size * (target_h / target_w))
    else:
        height = base_size
        width = int(base_size * (target_w / target_h))

    img = img.copy()
    img.thumbnail((width, height), Image.LANCZOS)

    canvas = Image.new("RGB", (width, height), color=(0, 0, 0))
    x = (width - img.width) // 2
    y = (height - img.height) // 2
    canvas.paste(img, (x, y))
    return canvas


def render_ad_preview(img: Image.Image, copy: AdCopy, style: PreviewStyle) -> Image.Image:
    """
    Render headline, link description and a CTA pill over the bottom of the
    creative, on a gradient so the text stays readable on any footage.
    Primary text is not drawn; on the platform it sits above the media.
    """
    img = img.convert("RGBA")
    w, h = img.size

    overlay = Image.new("RGBA", (w, h), (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    gradient_height = int(h * 0.4)
    for i in range(gradient_height):
        alpha = int(220 * (i / gradient_height))
        draw.line(
            [(0, h - gradient_height + i), (w, h - gradient_height + i)],
            fill=(0, 0, 0, alpha),
        )

    img = Image.alpha_composite(img, overlay)
    draw = ImageDraw.Draw(img)

    base_size = max(w, h) * 0.055
    headline_font = _load_font(style.font_path, size=int(base_size * 1.1))
    body_font = _load_font(style.font_path, size=int(base_size * 0.5))

    margin_x = int(w * 0.07)
    max_width = w - 2 * margin_x
    y = int(h * 0.62)

    y = _draw_text_block(
        draw,
        text=copy.headline,
        font=headline_font,
        max_width=max_width,
        x=margin_x,
        y=y,
        fill=style.headline_color,
        line_spacing=8,
    ) + 6

    if copy.description:
        y = _draw_text_block(
            draw,
            text=copy.description,
            font=body_font,
            max_width=max_width,
            x=margin_x,
            y=y,
            fill=style.body_color,
            line_spacing=6,
        ) + 12

    cta = style.call_to_action
    if cta:
        padding_x, padding_y = 18, 8
        text_w = draw.textlength(cta, font=body_font)
        box_w = int(text_w + 2 * padding_x)
        box_h = int(body_font.getbbox(cta)[3] + 2 * padding_y)
        draw.rounded_rectangle(
            [margin_x, y, margin_x + box_w, y + box_h],
            radius=box_h // 2,
            fill=style.headline_color,
        )
        draw.text((margin_x + padding_x, y + padding_y), cta, font=body_font, fill=style.body_color)

    return img.convert("RGB")


def _draw_text_block(
    draw: ImageDraw.ImageDraw,
    text: str,
    font: ImageFont.ImageFont,
    max_width: int,
    x: int,
    y: int,
    fill: Color,
    line_spacing: int,
) -> int:
    for line in _wrap_text(draw, text, font, max_width):
        draw.text((x, y), line, font=font, fill=fill)
        y += font.getbbox(line)[3] + line_spacing
    return y


def _wrap_text(
    draw: ImageDraw.ImageDraw, text: str, font: ImageFont.ImageFont, max_width: int
) -> List[str]:
    words = text.split()
    lines: List[str] = []
    current = ""
    for word in words:
        test = f"{current} {word}".strip()
        if draw.textlength(test, font=font) <= max_width or not current:
            current = test
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def parse_color(color_str: str, default: Color = (59, 130, 246)) -> Color:
    """Parse '#RRGGBB' or 'RRGGBB'; anything else falls back to `default`."""
    s = color_str.strip().lstrip("#")
    if len(s) == 6:
        try:
            return (int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16))
        except ValueError:
            pass
    return default


_SYSTEM_FONTS = [
    "/System/Library/Fonts/Helvetica.ttc",
    "/Library/Fonts/Arial.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    "C:/Windows/Fonts/arial.ttf",
]


def _load_font(font_path: Optional[str], size: int) -> ImageFont.ImageFont:
    """
    Load a TrueType font: the configured one first, then common system fonts,
    then Pillow's built-in default.
    """
    candidates = ([font_path] if font_path else []) + _SYSTEM_FONTS
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)
