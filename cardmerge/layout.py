"""
Layout planner for batch PDFs.

Searches card widths over a fixed ascending range and keeps the first size
that fits the most cards on a page. Pure and deterministic: the same inputs
always give the same plan.
"""

import math
from typing import Optional, Tuple

from loguru import logger
from reportlab.lib import pagesizes

from cardmerge.errors import ConfigurationError, LayoutDegenerateError
from cardmerge.models import LayoutPlan


DEFAULT_MIN_WIDTH = 200.0
DEFAULT_MAX_WIDTH = 400.0
DEFAULT_WIDTH_STEP = 20.0
DEFAULT_FALLBACK_WIDTH = 280.0


def page_size_points(name: str) -> Tuple[float, float]:
    """Portrait page size in points for a reportlab page size name (A4, LETTER, ...)"""
    size = getattr(pagesizes, name.strip().upper(), None)
    if not isinstance(size, tuple) or len(size) != 2:
        raise ConfigurationError(
            f"Unknown page size: {name}",
            details={'page_size': name},
            suggestions=["Use a reportlab page size name such as A4 or LETTER"]
        )
    return pagesizes.portrait(size)


def grid_for_width(card_width: float, aspect_ratio: float,
                   usable_width: float, usable_height: float) -> Tuple[float, int, int]:
    """(card_height, cards_per_row, cards_per_col) for one candidate width"""
    card_height = card_width / aspect_ratio
    cards_per_row = math.floor(usable_width / card_width)
    cards_per_col = math.floor(usable_height / card_height)
    return card_height, cards_per_row, cards_per_col


def plan_layout(aspect_ratio: float,
                page_width: float,
                page_height: float,
                margin: float,
                min_width: float = DEFAULT_MIN_WIDTH,
                max_width: float = DEFAULT_MAX_WIDTH,
                step: float = DEFAULT_WIDTH_STEP,
                fallback_width: float = DEFAULT_FALLBACK_WIDTH) -> LayoutPlan:
    """
    Pick the card size that maximizes cards per page.

    Args:
        aspect_ratio: Template width / height.
        page_width: Page width in points.
        page_height: Page height in points.
        margin: Margin on every side in points.

    Returns:
        LayoutPlan. When no candidate fits, the plan uses fallback_width and
        may hold zero cards per page; callers decide whether that is fatal.
    """
    if not aspect_ratio or aspect_ratio <= 0 or not math.isfinite(aspect_ratio):
        raise LayoutDegenerateError(aspect_ratio, page_width, page_height, margin)

    usable_width = page_width - 2 * margin
    usable_height = page_height - 2 * margin
    upper = min(max_width, usable_width)

    best: Optional[LayoutPlan] = None
    # Integer step index so float accumulation cannot skip the last candidate
    steps = int(math.floor((upper - min_width) / step + 1e-9)) + 1 if upper >= min_width else 0
    for i in range(steps):
        card_width = min_width + i * step
        card_height, per_row, per_col = grid_for_width(card_width, aspect_ratio,
                                                       usable_width, usable_height)
        if per_row <= 0 or per_col <= 0:
            continue
        per_page = per_row * per_col
        if best is None or per_page > best.cards_per_page:
            best = LayoutPlan(card_width, card_height, per_row, per_col, per_page,
                              page_width, page_height, margin)

    if best is None:
        card_height, per_row, per_col = grid_for_width(fallback_width, aspect_ratio,
                                                       usable_width, usable_height)
        per_row, per_col = max(per_row, 0), max(per_col, 0)
        best = LayoutPlan(fallback_width, card_height, per_row, per_col, per_row * per_col,
                          page_width, page_height, margin)
        logger.warning(f"No card width in [{min_width}, {upper}] fits; "
                       f"fallback {fallback_width}pt gives {best.cards_per_page} cards/page")

    logger.debug(f"Layout: {best.card_width:.1f}x{best.card_height:.1f}pt, "
                 f"{best.cards_per_row}x{best.cards_per_col} = {best.cards_per_page} per page")
    return best


def require_usable(plan: LayoutPlan, aspect_ratio: float) -> LayoutPlan:
    """Raise LayoutDegenerateError for a plan that fits no cards"""
    if plan.cards_per_page <= 0:
        raise LayoutDegenerateError(aspect_ratio, plan.page_width, plan.page_height, plan.margin)
    return plan
