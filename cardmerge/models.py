"""
Data model for templates, fields, datasets and pipeline results.

Templates and datasets arrive as JSON documents (camelCase keys), so they
are pydantic models with aliases. Pipeline results are plain dataclasses.
"""

from dataclasses import dataclass, field as dc_field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField


DataRecord = Dict[str, Any]


class FieldKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class FieldStyle(BaseModel):
    """Text styling for a field"""
    model_config = ConfigDict(populate_by_name=True)

    font_family: Optional[str] = PydanticField(default=None, alias="fontFamily")
    font_size: Optional[float] = PydanticField(default=None, alias="fontSize")
    color: Optional[str] = None
    bold: bool = False
    italic: bool = False
    align: str = "left"  # left, center, right


class TemplateField(BaseModel):
    """A positioned region on the template bound to a data column"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    kind: FieldKind = PydanticField(default=FieldKind.TEXT, alias="type")
    x: float = 0
    y: float = 0
    width: float = PydanticField(gt=0)
    height: float = PydanticField(gt=0)
    z_index: int = PydanticField(default=0, alias="zIndex")
    style: FieldStyle = PydanticField(default_factory=FieldStyle)


class TemplateImage(BaseModel):
    """Reference to the template's base raster image"""
    storage: str = "gridfs"  # gridfs (object storage) or local
    key: Optional[str] = None
    url: Optional[str] = None


class ImageMeta(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None


class Template(BaseModel):
    """User-supplied base image plus positioned fields and a column mapping"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = PydanticField(alias="_id")
    name: str = ""
    image: TemplateImage = PydanticField(default_factory=TemplateImage)
    image_meta: ImageMeta = PydanticField(default_factory=ImageMeta, alias="imageMeta")
    fields: List[TemplateField] = PydanticField(default_factory=list)
    mapping: Dict[str, str] = PydanticField(default_factory=dict)

    @property
    def aspect_ratio(self) -> float:
        """Width / height from imageMeta, defaulting to a 400x250 card"""
        width = self.image_meta.width or 400
        height = self.image_meta.height or 250
        return width / height


class Dataset(BaseModel):
    """Header list plus ordered rows extracted from a spreadsheet"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = PydanticField(alias="_id")
    name: str = ""
    headers: List[str] = PydanticField(default_factory=list)
    rows: List[DataRecord] = PydanticField(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass
class RenderedCard:
    """One template+record composite, PNG encoded"""
    buffer: bytes
    width: int
    height: int


@dataclass(frozen=True)
class LayoutPlan:
    """Card size and grid chosen for one batch job (points)"""
    card_width: float
    card_height: float
    cards_per_row: int
    cards_per_col: int
    cards_per_page: int
    page_width: float
    page_height: float
    margin: float

    @property
    def usable_width(self) -> float:
        return self.page_width - 2 * self.margin

    @property
    def usable_height(self) -> float:
        return self.page_height - 2 * self.margin

    @property
    def horizontal_gap(self) -> float:
        return (self.usable_width - self.cards_per_row * self.card_width) / (self.cards_per_row + 1)

    @property
    def vertical_gap(self) -> float:
        return (self.usable_height - self.cards_per_col * self.card_height) / (self.cards_per_col + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cardWidth': self.card_width,
            'cardHeight': self.card_height,
            'cardsPerRow': self.cards_per_row,
            'cardsPerCol': self.cards_per_col,
            'cardsPerPage': self.cards_per_page,
        }


@dataclass
class CardPlacement:
    """Where one card landed on a page, in top-left-origin points"""
    card_index: int
    row: int
    col: int
    cell_x: float
    cell_y: float
    x: float
    y: float
    width: float
    height: float
    offset_x: float
    offset_y: float


@dataclass
class ComposedDocument:
    """Multi-page PDF plus the placements drawn on each page"""
    pdf: bytes
    pages: List[List[CardPlacement]]

    @property
    def page_count(self) -> int:
        return len(self.pages)


@dataclass
class ColorValidation:
    is_cmyk: bool = False
    has_rgb: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {'isCMYK': self.is_cmyk, 'hasRGB': self.has_rgb}


@dataclass
class CMYKConversionResult:
    buffer: bytes
    fully_converted: bool
    original_size: int
    converted_size: int
    validation: ColorValidation = dc_field(default_factory=ColorValidation)
    error: Optional[str] = None

    @property
    def converted(self) -> bool:
        """True when the buffer is Ghostscript output rather than the input"""
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fullyConverted': self.fully_converted,
            'originalSize': self.original_size,
            'convertedSize': self.converted_size,
            'validation': self.validation.to_dict(),
            'error': self.error,
        }


@dataclass
class BatchResult:
    pdf: bytes
    filename: str
    count: int
    pages: int
    layout: LayoutPlan
    cmyk_requested: bool
    cmyk_applied: bool
    fully_converted: bool
    conversion: Optional[CMYKConversionResult] = None
    conversion_error: Optional[str] = None

    @property
    def cmyk_compatible(self) -> bool:
        """True when the document went through CMYK conversion"""
        return self.cmyk_applied
