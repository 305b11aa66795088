"""
Page compositor for batch PDFs.

Places rendered cards row-major into the grid of a LayoutPlan, one page
after another. Geometry is computed top-left-origin and flipped to
reportlab's bottom-left origin only when drawing.
"""

import io
from typing import List, Sequence, Tuple

from PIL import Image, UnidentifiedImageError
from loguru import logger
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas

from cardmerge.cmyk import CMYK_COLORS
from cardmerge.errors import LayoutDegenerateError, RenderError
from cardmerge.models import CardPlacement, ComposedDocument, LayoutPlan, RenderedCard


REGISTRATION_MARK_SIZE = 5.0
CUT_LINE_WIDTH = 0.5


def fit_within(image_width: float, image_height: float,
               cell_width: float, cell_height: float) -> Tuple[float, float, float, float]:
    """
    Scale an image into a cell keeping its aspect ratio, centered.

    Returns:
        (width, height, offset_x, offset_y)
    """
    image_ratio = image_width / image_height
    cell_ratio = cell_width / cell_height

    if abs(image_ratio - cell_ratio) <= 1e-9 * cell_ratio:
        return cell_width, cell_height, 0.0, 0.0

    if image_ratio > cell_ratio:
        # wider than the cell: fit width, center vertically
        width, height = cell_width, cell_width / image_ratio
        return width, height, 0.0, (cell_height - height) / 2
    # taller than the cell: fit height, center horizontally
    width, height = cell_height * image_ratio, cell_height
    return width, height, (cell_width - width) / 2, 0.0


def cell_origin(plan: LayoutPlan, row: int, col: int) -> Tuple[float, float]:
    """Top-left corner of a grid cell, one gap in from the margin"""
    h_gap, v_gap = plan.horizontal_gap, plan.vertical_gap
    x = plan.margin + h_gap + col * (plan.card_width + h_gap)
    y = plan.margin + v_gap + row * (plan.card_height + v_gap)
    return x, y


def grid_position(plan: LayoutPlan, index: int) -> Tuple[int, int, int]:
    """(page, row, col) for the index-th card"""
    page, cell = divmod(index, plan.cards_per_page)
    row, col = divmod(cell, plan.cards_per_row)
    return page, row, col


def card_pixel_size(card: RenderedCard) -> Tuple[int, int]:
    """Read the size from the PNG itself rather than trusting the metadata"""
    with Image.open(io.BytesIO(card.buffer)) as img:
        width, height = img.size
    if width <= 0 or height <= 0:
        raise ValueError(f"card has no area: {width}x{height}")
    return width, height


class PageCompositor:
    """Draws cards onto fixed-size pages following a LayoutPlan."""

    def __init__(self, plan: LayoutPlan, print_marks: bool = False, title: str = None):
        if plan.cards_per_page <= 0 or plan.cards_per_row <= 0:
            raise LayoutDegenerateError(plan.card_width / plan.card_height if plan.card_height else 0,
                                        plan.page_width, plan.page_height, plan.margin)
        self.plan = plan
        self.print_marks = print_marks
        self.title = title

    def _flip(self, y: float, height: float) -> float:
        return self.plan.page_height - y - height

    def draw_registration_marks(self, pdf) -> None:
        """Solid squares just outside the four margin corners"""
        plan, size = self.plan, REGISTRATION_MARK_SIZE
        corners = [
            (plan.margin - size, plan.margin - size),
            (plan.page_width - plan.margin, plan.margin - size),
            (plan.margin - size, plan.page_height - plan.margin),
            (plan.page_width - plan.margin, plan.page_height - plan.margin),
        ]
        pdf.setFillColor(CMYK_COLORS['BLACK'])
        for x, y in corners:
            pdf.rect(x, self._flip(y, size), size, size, stroke=0, fill=1)

    def draw_cut_marks(self, pdf, cell_x: float, cell_y: float) -> None:
        """Thin rectangle along the cell edges as a cutting guide"""
        plan = self.plan
        pdf.setStrokeColor(CMYK_COLORS['LIGHT_GRAY'])
        pdf.setLineWidth(CUT_LINE_WIDTH)
        pdf.rect(cell_x, self._flip(cell_y, plan.card_height), plan.card_width, plan.card_height,
                 stroke=1, fill=0)

    def place_card(self, pdf, card: RenderedCard, index: int, row: int, col: int) -> CardPlacement:
        plan = self.plan
        cell_x, cell_y = cell_origin(plan, row, col)

        try:
            pixel_width, pixel_height = card_pixel_size(card)
        except (OSError, UnidentifiedImageError, ValueError) as e:
            logger.warning(f"Failed to read card {index} dimensions, using bounding-box fit: {e}")
            try:
                reader = ImageReader(io.BytesIO(card.buffer))
                pdf.drawImage(reader, cell_x, self._flip(cell_y, plan.card_height),
                              width=plan.card_width, height=plan.card_height,
                              mask='auto', preserveAspectRatio=True, anchor='c')
            except (OSError, ValueError) as draw_error:
                raise RenderError(f"Card {index} could not be drawn: {draw_error}",
                                  details={'card_index': index})
            return CardPlacement(index, row, col, cell_x, cell_y, cell_x, cell_y,
                                 plan.card_width, plan.card_height, 0.0, 0.0)

        width, height, offset_x, offset_y = fit_within(pixel_width, pixel_height,
                                                       plan.card_width, plan.card_height)
        x, y = cell_x + offset_x, cell_y + offset_y
        reader = ImageReader(io.BytesIO(card.buffer))
        pdf.drawImage(reader, x, self._flip(y, height), width=width, height=height, mask='auto')
        return CardPlacement(index, row, col, cell_x, cell_y, x, y, width, height, offset_x, offset_y)

    def compose(self, cards: Sequence[RenderedCard]) -> ComposedDocument:
        """Lay out every card in order and return the finished PDF."""
        plan = self.plan
        buffer = io.BytesIO()
        pdf = pdf_canvas.Canvas(buffer, pagesize=(plan.page_width, plan.page_height))
        if self.title:
            pdf.setTitle(self.title)
        pdf.setCreator("cardmerge")

        pages: List[List[CardPlacement]] = [[]]
        if self.print_marks:
            self.draw_registration_marks(pdf)

        for index, card in enumerate(cards):
            _, row, col = grid_position(plan, index)
            if index > 0 and row == 0 and col == 0:
                pdf.showPage()
                pages.append([])
                if self.print_marks:
                    self.draw_registration_marks(pdf)

            placement = self.place_card(pdf, card, index, row, col)
            if self.print_marks:
                self.draw_cut_marks(pdf, placement.cell_x, placement.cell_y)
            pages[-1].append(placement)

        pdf.showPage()
        pdf.save()

        logger.info(f"Composed {len(cards)} cards onto {len(pages)} page(s), "
                    f"{plan.cards_per_page} per page")
        return ComposedDocument(pdf=buffer.getvalue(), pages=pages)


def compose_pages(plan: LayoutPlan, cards: Sequence[RenderedCard],
                  want_print_marks: bool = False) -> ComposedDocument:
    """Module-level entry point matching the batch pipeline's call site"""
    return PageCompositor(plan, print_marks=want_print_marks).compose(cards)
