"""
Image Processing Module

Builds the display derivative of an uploaded photo:
1. Resize to the target height (aspect ratio kept, never upscaled)
2. Overlay a tiled diagonal text watermark
3. Compress as JPEG
"""
import logging
import math
from datetime import datetime, timezone
from io import BytesIO
from typing import Optional

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from facematch.config import (
    WATERMARK_ANGLE,
    WATERMARK_FONT_SIZE,
    WATERMARK_OPACITY,
    WATERMARK_SPACING,
    WATERMARK_TEXT,
)
from facematch.errors import UnreadableImageError
from facematch.schemas import ProcessedImage, TransformOptions

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)

# EXIF tags
_EXIF_IFD = 0x8769
_DATETIME_ORIGINAL = 36867
_DATETIME = 306


def _load_font(size: int):
    try:
        return ImageFont.truetype("DejaVuSans-Bold.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def _to_rgb(image: Image.Image) -> Image.Image:
    """Flatten transparency onto white and convert to RGB."""
    if image.mode in ("RGBA", "LA", "P"):
        if image.mode == "P":
            image = image.convert("RGBA")
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def get_image_metadata(image_bytes: bytes) -> dict:
    """Format and dimensions without decoding the pixel data."""
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            return {
                "format": image.format,
                "width": image.width,
                "height": image.height,
                "mode": image.mode,
            }
    except _DECODE_ERRORS as e:
        raise UnreadableImageError(f"Could not read image metadata: {e}") from e


def read_capture_time(image: Image.Image) -> Optional[datetime]:
    """EXIF DateTimeOriginal (falling back to DateTime), as UTC."""
    exif = image.getexif()
    value = exif.get_ifd(_EXIF_IFD).get(_DATETIME_ORIGINAL) or exif.get(_DATETIME)
    if not value:
        return None

    try:
        return datetime.strptime(str(value).strip("\x00 "), "%Y:%m:%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        logger.debug(f"Ignoring malformed EXIF timestamp {value!r}")
        return None


def _text_sprite(text: str, font, angle: float) -> Image.Image:
    """Opaque white text on a transparent background, rotated to the watermark angle."""
    left, top, right, bottom = font.getbbox(text)
    sprite = Image.new("RGBA", (right - left + 2, bottom - top + 2), (255, 255, 255, 0))
    ImageDraw.Draw(sprite).text((1 - left, 1 - top), text, fill=(255, 255, 255, 255), font=font)
    # Pillow rotates counter-clockwise for positive angles
    return sprite.rotate(-angle, resample=Image.Resampling.BICUBIC, expand=True)


def generate_watermark(
    width: int,
    height: int,
    text: str = WATERMARK_TEXT,
    opacity: float = WATERMARK_OPACITY,
    angle: float = WATERMARK_ANGLE,
    spacing: int = WATERMARK_SPACING,
    font_size: int = WATERMARK_FONT_SIZE,
) -> Image.Image:
    """
    RGBA overlay of repeated text on a rotated grid, width x height.

    The grid is centered on the canvas and walked far enough in every
    direction to reach the corners, so thin images are covered too. Only
    the canvas-sized overlay and one small rotated text sprite are held
    in memory.
    """
    overlay = Image.new("RGBA", (width, height), (255, 255, 255, 0))
    sprite = _text_sprite(text, _load_font(font_size), angle)
    sprite_w, sprite_h = sprite.size

    theta = math.radians(-angle)
    along = (math.cos(theta), -math.sin(theta))
    across = (math.sin(theta), math.cos(theta))
    cx, cy = width / 2, height / 2
    reach = math.ceil(math.hypot(width, height) / 2) + spacing
    steps = range(-(reach // spacing), reach // spacing + 1)

    for i in steps:
        for j in steps:
            u, v = i * spacing, j * spacing
            x = int(round(cx + u * along[0] + v * across[0] - sprite_w / 2))
            y = int(round(cy + u * along[1] + v * across[1] - sprite_h / 2))
            if x >= width or y >= height or x + sprite_w <= 0 or y + sprite_h <= 0:
                continue
            overlay.paste(sprite, (x, y), sprite)

    alpha = overlay.getchannel("A").point(lambda a: int(round(a * opacity)))
    overlay.putalpha(alpha)
    return overlay


def transform_for_display(image_bytes: bytes, options: Optional[TransformOptions] = None) -> ProcessedImage:
    """
    Resize, watermark and compress an uploaded photo for display.

    Raises:
        UnreadableImageError: If the image cannot be decoded or has no dimensions
    """
    options = options or TransformOptions()

    try:
        with Image.open(BytesIO(image_bytes)) as source:
            source.load()
            taken_at = read_capture_time(source)
            image = _to_rgb(ImageOps.exif_transpose(source))
    except _DECODE_ERRORS as e:
        raise UnreadableImageError(f"Failed to process image: {e}") from e

    original_width, original_height = image.size
    if not original_width or not original_height:
        raise UnreadableImageError("Could not read image dimensions")

    # Don't upscale
    new_height = min(options.target_height, original_height)
    new_width = max(1, math.floor(new_height * original_width / original_height + 0.5))

    if (new_width, new_height) != image.size:
        image = image.resize((new_width, new_height), Image.Resampling.LANCZOS)
        logger.debug(f"Resized {original_width}x{original_height} -> {new_width}x{new_height}")

    if not options.skip_watermark:
        overlay = generate_watermark(new_width, new_height)
        image = Image.alpha_composite(image.convert("RGBA"), overlay).convert("RGB")

    output = BytesIO()
    image.save(output, format="JPEG", quality=options.quality, optimize=True)

    return ProcessedImage(
        buffer=output.getvalue(),
        width=image.width,
        height=image.height,
        original_width=original_width,
        original_height=original_height,
        taken_at=taken_at,
    )
