"""
Batch pipeline: records -> cards -> pages -> (CMYK) -> storage.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from loguru import logger

from cardmerge.cmyk import CMYKConverter, ConversionOptions
from cardmerge.config import AppConfig, get_config
from cardmerge.errors import BatchCancelledError, ConversionFailedError
from cardmerge.layout import page_size_points, plan_layout, require_usable
from cardmerge.models import BatchResult, DataRecord, LayoutPlan, RenderedCard, Template
from cardmerge.pages import PageCompositor
from cardmerge.render import CardRenderer
from cardmerge.storage import ObjectStorage


OUTPUTS_BUCKET = 'outputs'


class BatchGenerator:
    """Runs one batch job for a template and an ordered list of records."""

    def __init__(self,
                 storage: Optional[ObjectStorage] = None,
                 config: Optional[AppConfig] = None,
                 renderer: Optional[CardRenderer] = None,
                 converter: Optional[CMYKConverter] = None):
        self.config = config or get_config()
        self.storage = storage
        self.renderer = renderer or CardRenderer(storage=storage, config=self.config)
        self.converter = converter or CMYKConverter(
            ghostscript_path=self.config.GHOSTSCRIPT_PATH,
            timeout=self.config.CMYK_TIMEOUT_SECONDS,
            temp_dir=self.config.TEMP_FOLDER,
        )

    def plan_for(self, template: Template) -> LayoutPlan:
        page_width, page_height = page_size_points(self.config.PAGE_SIZE)
        plan = plan_layout(
            template.aspect_ratio, page_width, page_height, self.config.PAGE_MARGIN,
            min_width=self.config.CARD_WIDTH_MIN,
            max_width=self.config.CARD_WIDTH_MAX,
            step=self.config.CARD_WIDTH_STEP,
            fallback_width=self.config.CARD_WIDTH_FALLBACK,
        )
        return require_usable(plan, template.aspect_ratio)

    def render_cards(self, template: Template, records: Sequence[DataRecord],
                     cancel_event: Optional[threading.Event] = None) -> List[RenderedCard]:
        """Render every record, in record order; cancellable between records."""
        total = len(records)

        def render_one(index: int) -> RenderedCard:
            if cancel_event is not None and cancel_event.is_set():
                raise BatchCancelledError(index, total)
            return self.renderer.render_record(template, records[index])

        workers = max(1, self.config.RENDER_WORKERS)
        if workers == 1 or total <= 1:
            cards = []
            for index in range(total):
                cards.append(render_one(index))
                if (index + 1) % 25 == 0:
                    logger.info(f"Rendered {index + 1}/{total} records")
            return cards

        # map() yields in submission order, so row order survives the pool
        with ThreadPoolExecutor(max_workers=workers) as executor:
            try:
                return list(executor.map(render_one, range(total)))
            except BatchCancelledError:
                executor.shutdown(wait=True, cancel_futures=True)
                raise

    def generate(self, template: Template, records: Sequence[DataRecord],
                 cmyk: bool = True, cancel_event: Optional[threading.Event] = None,
                 options: Optional[ConversionOptions] = None) -> BatchResult:
        """
        Build the batch PDF.

        Always returns a usable document: converter absence or failure keeps
        the RGB PDF and is reported on the result.
        """
        started = time.time()
        plan = self.plan_for(template)

        want_cmyk = bool(cmyk) and self.converter.is_available()
        if cmyk and not want_cmyk:
            logger.warning("CMYK conversion requested but Ghostscript not available. Generating RGB PDF.")

        cards = self.render_cards(template, records, cancel_event)
        document = PageCompositor(plan, print_marks=want_cmyk, title=template.name).compose(cards)

        pdf_bytes = document.pdf
        filename = f"batch-{int(started * 1000)}.pdf"
        conversion = None
        conversion_error = None

        if want_cmyk:
            options = options or ConversionOptions(image_quality=self.config.CMYK_IMAGE_QUALITY)
            try:
                conversion = self.converter.convert(pdf_bytes, options, cancel_event)
            except ConversionFailedError as e:
                if cancel_event is not None and cancel_event.is_set():
                    raise BatchCancelledError(len(records), len(records))
                logger.error(f"CMYK conversion failed, using RGB PDF: {e.reason}")
                conversion_error = e.reason
                want_cmyk = False
            else:
                pdf_bytes = conversion.buffer
                filename = filename.replace('.pdf', '-cmyk.pdf')

        if cancel_event is not None and cancel_event.is_set():
            raise BatchCancelledError(len(records), len(records))

        fully_converted = bool(conversion and conversion.fully_converted)
        logger.info(f"Batch of {len(records)} records: {document.page_count} page(s), "
                    f"cmyk={want_cmyk}, fully_converted={fully_converted}, "
                    f"{time.time() - started:.2f}s")

        return BatchResult(
            pdf=pdf_bytes,
            filename=filename,
            count=len(records),
            pages=document.page_count,
            layout=plan,
            cmyk_requested=bool(cmyk),
            cmyk_applied=want_cmyk,
            fully_converted=fully_converted,
            conversion=conversion,
            conversion_error=conversion_error,
        )

    def store(self, result: BatchResult) -> str:
        """Write the PDF to the outputs bucket and return its id"""
        if self.storage is None:
            raise ValueError("no object storage configured")
        return self.storage.write_buffer(OUTPUTS_BUCKET, result.pdf, filename=result.filename,
                                         content_type='application/pdf')
