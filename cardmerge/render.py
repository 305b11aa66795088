"""
Card composition engine for Card Merge Generator.

This module handles:
- Loading the template base image at its natural size
- Rasterizing text fields with family, size, color, weight and alignment
- Cover-fitting image fields into their boxes
- Compositing every field onto the base image and encoding PNG
"""

import io
import threading
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple, Union

from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError
from loguru import logger

from cardmerge.config import AppConfig, get_config
from cardmerge.errors import CardMergeError, TemplateImageMissingError
from cardmerge.models import DataRecord, FieldStyle, RenderedCard, Template, TemplateField
from cardmerge.resolver import Literal, ResolvedImage, ValueResolver
from cardmerge.storage import ObjectStorage, is_object_id


TEMPLATES_BUCKET = 'templates'

# Font file candidates per (bold, italic); the family name is tried first
FONT_SUFFIXES = {
    (False, False): ["", " Regular", "-Regular"],
    (True, False): [" Bold", "-Bold", "bd"],
    (False, True): [" Italic", "-Italic", "-Oblique", "i"],
    (True, True): [" Bold Italic", "-BoldItalic", "-BoldOblique", "bi"],
}
FALLBACK_FAMILIES = ["DejaVuSans", "LiberationSans", "Arial"]


def _font_file_candidates(family: str, bold: bool, italic: bool) -> List[str]:
    candidates = []
    compact = family.replace(" ", "")
    for name in (family, compact):
        for suffix in FONT_SUFFIXES[(bold, italic)]:
            candidates.append(f"{name}{suffix}.ttf")
    return candidates


@lru_cache(maxsize=256)
def _load_font(family: str, size: int, bold: bool, italic: bool, thread_id: int) -> ImageFont.FreeTypeFont:
    families = [family] + [f for f in FALLBACK_FAMILIES if f.lower() != family.lower()]
    for name in families:
        for candidate in _font_file_candidates(name, bold, italic):
            try:
                return ImageFont.truetype(candidate, size)
            except OSError:
                continue

    logger.debug(f"No TrueType font for {family} (bold={bold}, italic={italic}), using default")
    return ImageFont.load_default(size=size)


def load_font(family: str, size: int, bold: bool = False, italic: bool = False) -> ImageFont.FreeTypeFont:
    """
    Find a TrueType font for the family/variant, falling back to Pillow's default.

    Font objects are cached per thread; render workers never share one.
    """
    return _load_font(family, size, bold, italic, threading.get_ident())


def parse_color(value: Optional[str]) -> Tuple[int, int, int, int]:
    """CSS color string to RGBA; anything unparseable renders black"""
    if not value:
        return (0, 0, 0, 255)
    try:
        rgba = ImageColor.getcolor(value, "RGBA")
    except ValueError:
        logger.warning(f"Invalid text color {value!r}, using black")
        return (0, 0, 0, 255)
    return rgba


def make_text_layer(text: str, width: int, height: int, style: FieldStyle,
                    default_family: str = "Arial", default_size: float = 18) -> Image.Image:
    """
    Rasterize one line of text into a transparent layer of the field's size.

    The baseline sits max(fontSize, 4) px below the top of the layer and the
    horizontal anchor follows style.align.
    """
    layer = Image.new("RGBA", (max(width, 1), max(height, 1)), (0, 0, 0, 0))
    if not text:
        return layer

    font_size = style.font_size or default_size
    font = load_font(style.font_family or default_family, max(int(round(font_size)), 1),
                     bool(style.bold), bool(style.italic))

    align = (style.align or "left").lower()
    if align == "center":
        x, anchor = width / 2, "ms"
    elif align == "right":
        x, anchor = width, "rs"
    else:
        x, anchor = 0, "ls"
    baseline = max(font_size, 4)

    draw = ImageDraw.Draw(layer)
    draw.text((x, baseline), text, font=font, fill=parse_color(style.color), anchor=anchor)
    return layer


def cover_fit(data: bytes, width: int, height: int) -> Image.Image:
    """Scale and center-crop an image so it fills width x height exactly."""
    with Image.open(io.BytesIO(data)) as source:
        source = ImageOps.exif_transpose(source)
        image = source.convert("RGBA")
    return ImageOps.fit(image, (max(width, 1), max(height, 1)), Image.Resampling.LANCZOS)


class CardRenderer:
    """Composites one record onto a template's base image."""

    def __init__(self,
                 storage: Optional[ObjectStorage] = None,
                 resolver: Optional[ValueResolver] = None,
                 config: Optional[AppConfig] = None):
        self.config = config or get_config()
        self.storage = storage
        self.resolver = resolver or ValueResolver(
            storage=storage,
            files_prefix=self.config.FILES_PREFIX,
            http_timeout=self.config.HTTP_TIMEOUT_SECONDS,
        )

    def load_base_image(self, template: Template) -> Image.Image:
        """Load the template image from object storage or a local path."""
        key = template.image.key
        if not key:
            raise TemplateImageMissingError(template.id, str(key), "template has no image key")

        try:
            if template.image.storage == "gridfs" or is_object_id(key):
                if self.storage is None:
                    raise TemplateImageMissingError(template.id, key, "no object storage configured")
                data = self.storage.read_by_id(TEMPLATES_BUCKET, key)
            else:
                data = Path(key).read_bytes()
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                base = img.convert("RGBA")
        except TemplateImageMissingError:
            raise
        except (CardMergeError, OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise TemplateImageMissingError(template.id, key, str(e))

        logger.debug(f"Loaded template image {key}: {base.size}")
        return base

    def ordered_fields(self, template: Template) -> List[TemplateField]:
        """Fields in compositing order: by zIndex (stable) or as stored"""
        if self.config.SORT_FIELDS_BY_Z_INDEX:
            return sorted(template.fields, key=lambda f: f.z_index)
        return list(template.fields)

    def render_layer(self, field: TemplateField, template: Template,
                     record: DataRecord) -> Optional[Image.Image]:
        """Build the layer for one field, or None when the field is skipped"""
        width, height = int(round(field.width)), int(round(field.height))
        value = self.resolver.resolve(field, template.mapping, record)
        if value is None:
            return None

        if isinstance(value, ResolvedImage):
            try:
                return cover_fit(value.data, width, height)
            except (OSError, UnidentifiedImageError, Image.DecompressionBombError, ValueError) as e:
                logger.warning(f"Failed to compose image for field {field.id}: {e}")
                value = Literal(value.source)

        return make_text_layer(
            value.text, width, height, field.style,
            default_family=self.config.DEFAULT_FONT_FAMILY,
            default_size=self.config.DEFAULT_FONT_SIZE,
        )

    def render_image(self, template: Template, record: DataRecord) -> Image.Image:
        """Composite all fields onto the base image; size is the base image's."""
        base = self.load_base_image(template)

        layers = []
        for field in self.ordered_fields(template):
            layer = self.render_layer(field, template, record)
            if layer is None:
                logger.debug(f"Field {field.id} has no mapped column, skipped")
                continue
            layers.append((layer, (int(round(field.x)), int(round(field.y)))))

        result = base
        for layer, position in layers:
            # paste into a transparent full-size sheet so out-of-bounds boxes clip
            sheet = Image.new("RGBA", base.size, (0, 0, 0, 0))
            sheet.paste(layer, position)
            result = Image.alpha_composite(result, sheet)

        logger.debug(f"Composited {len(layers)} of {len(template.fields)} fields onto {base.size}")
        return result

    def render_record(self, template: Template, record: DataRecord) -> RenderedCard:
        """Render one record to a PNG card."""
        image = self.render_image(template, record)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG", compress_level=6)
        return RenderedCard(buffer=buffer.getvalue(), width=image.width, height=image.height)


def render_record(template: Template, record: DataRecord,
                  storage: Optional[ObjectStorage] = None) -> RenderedCard:
    """Module-level convenience wrapper around CardRenderer"""
    return CardRenderer(storage=storage).render_record(template, record)
