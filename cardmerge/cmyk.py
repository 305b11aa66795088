"""
CMYK conversion and validation for print-ready PDFs.

Ghostscript does the work: pdfwrite re-encodes the document with DeviceCMYK
as the target for vector and image content, and a second uncompressed
rewrite is scanned for the color space names it still declares.
"""

import re
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from loguru import logger
from reportlab.lib.colors import CMYKColor

from cardmerge.errors import ConversionFailedError, ValidationInconclusiveError
from cardmerge.models import CMYKConversionResult, ColorValidation


GHOSTSCRIPT_CANDIDATES = ("gs", "gswin64c", "gswin32c")
PROBE_TIMEOUT_SECONDS = 10
POLL_INTERVAL_SECONDS = 0.25

# Color space names plus the device color operators of uncompressed page content
RGB_MARKERS = re.compile(rb"/DeviceRGB\b|(?:^|\s)(?:-?\d*\.?\d+\s+){3}(?:rg|RG)\b")
CMYK_MARKERS = re.compile(rb"/DeviceCMYK\b|(?:^|\s)(?:-?\d*\.?\d+\s+){4}(?:k|K)\b")

# Image resolution tiers (dpi)
IMAGE_QUALITY_DPI = {
    'high': 300,
    'medium': 150,
    'low': 72,
}


def cmyk_color(c: float, m: float, y: float, k: float) -> CMYKColor:
    """CMYK color from 0-100 percentages"""
    return CMYKColor(c / 100.0, m / 100.0, y / 100.0, k / 100.0)


# Pure CMYK values for print marks and other small vector elements
CMYK_COLORS = {
    'BLACK': cmyk_color(0, 0, 0, 100),
    'WHITE': cmyk_color(0, 0, 0, 0),
    'CYAN': cmyk_color(100, 0, 0, 0),
    'MAGENTA': cmyk_color(0, 100, 0, 0),
    'YELLOW': cmyk_color(0, 0, 100, 0),
    'RED': cmyk_color(0, 100, 100, 0),
    'GREEN': cmyk_color(100, 0, 100, 0),
    'DARK_BLUE': cmyk_color(100, 80, 0, 20),
    'GRAY': cmyk_color(0, 0, 0, 50),
    'LIGHT_GRAY': cmyk_color(0, 0, 0, 20),
}


@lru_cache(maxsize=8)
def _probe(executable: str) -> Optional[str]:
    """Ghostscript version string, or None when the executable does not run"""
    try:
        result = subprocess.run([executable, '--version'], capture_output=True,
                                text=True, timeout=PROBE_TIMEOUT_SECONDS)
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def find_ghostscript(configured_path: Optional[str] = None) -> Optional[str]:
    """Resolve the Ghostscript executable: configured path first, then PATH"""
    if configured_path:
        return configured_path
    for name in GHOSTSCRIPT_CANDIDATES:
        found = shutil.which(name)
        if found:
            return found
    return None


def is_converter_available(configured_path: Optional[str] = None) -> bool:
    """Capability probe; memoized per executable, see invalidate_probe()"""
    executable = find_ghostscript(configured_path)
    return executable is not None and _probe(executable) is not None


def ghostscript_version(configured_path: Optional[str] = None) -> Optional[str]:
    executable = find_ghostscript(configured_path)
    return _probe(executable) if executable else None


def invalidate_probe() -> None:
    """Forget memoized probe results (after installing Ghostscript, in tests)"""
    _probe.cache_clear()


def run_ghostscript(args: List[str], timeout: float,
                    cancel_event: Optional[threading.Event] = None) -> subprocess.CompletedProcess:
    """
    Run Ghostscript, killing it on timeout or cancellation.

    Raises:
        ConversionFailedError: executable missing, timeout or cancellation.
    """
    try:
        process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise ConversionFailedError(f"could not start Ghostscript: {e}")

    deadline = time.monotonic() + timeout
    while True:
        try:
            stdout, stderr = process.communicate(timeout=POLL_INTERVAL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                process.kill()
                process.communicate()
                raise ConversionFailedError("cancelled")
            if time.monotonic() >= deadline:
                process.kill()
                process.communicate()
                raise ConversionFailedError(f"timed out after {timeout:g}s")

    return subprocess.CompletedProcess(args, process.returncode, stdout, stderr)


@dataclass
class ConversionOptions:
    image_quality: str = 'high'  # high, medium, low
    pdfx3: bool = False  # PDF/X-3 output, needs color_profile
    color_profile: Optional[str] = None  # ICC output profile


class CMYKConverter:
    """Converts RGB PDFs to DeviceCMYK and reports how complete that was."""

    def __init__(self, ghostscript_path: Optional[str] = None, timeout: float = 30.0,
                 temp_dir: Optional[str] = None):
        self.ghostscript_path = ghostscript_path
        self.timeout = timeout
        self.temp_dir = temp_dir

    @property
    def executable(self) -> Optional[str]:
        return find_ghostscript(self.ghostscript_path)

    def is_available(self) -> bool:
        return is_converter_available(self.ghostscript_path)

    def _workdir(self) -> tempfile.TemporaryDirectory:
        if self.temp_dir:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)
        return tempfile.TemporaryDirectory(prefix='cmyk-', dir=self.temp_dir)

    def build_convert_args(self, input_path: Path, output_path: Path,
                           options: ConversionOptions) -> List[str]:
        dpi = IMAGE_QUALITY_DPI.get(options.image_quality)
        if dpi is None:
            logger.warning(f"Unknown image quality {options.image_quality!r}, using high")
            dpi = IMAGE_QUALITY_DPI['high']

        args = [
            self.executable,
            '-dNOPAUSE', '-dBATCH', '-dSAFER', '-q',
            '-sDEVICE=pdfwrite',
            '-sProcessColorModel=DeviceCMYK',
            '-sColorConversionStrategy=CMYK',
            '-sColorConversionStrategyForImages=CMYK',
            '-dConvertCMYKImagesToRGB=false',
            '-dPDFSETTINGS=/prepress',
            '-dDownsampleColorImages=true',
            '-dDownsampleGrayImages=true',
            f'-dColorImageResolution={dpi}',
            f'-dGrayImageResolution={dpi}',
        ]
        if options.pdfx3 and options.color_profile:
            args += ['-dPDFX=3', f'-sOutputICCProfile={options.color_profile}']
        args += [f'-sOutputFile={output_path}', str(input_path)]
        return args

    def convert_to_cmyk(self, pdf_bytes: bytes, options: Optional[ConversionOptions] = None,
                        cancel_event: Optional[threading.Event] = None) -> bytes:
        """
        Run the conversion and return the CMYK PDF bytes.

        Raises:
            ConversionFailedError: non-zero exit, timeout, cancellation, or
                a missing/empty output file.
        """
        options = options or ConversionOptions()
        if not self.executable:
            raise ConversionFailedError("Ghostscript not found")

        with self._workdir() as workdir:
            input_path = Path(workdir) / 'input.pdf'
            output_path = Path(workdir) / 'output-cmyk.pdf'
            input_path.write_bytes(pdf_bytes)

            args = self.build_convert_args(input_path, output_path, options)
            logger.info(f"Converting PDF to CMYK ({options.image_quality} quality, {len(pdf_bytes):,} bytes)")
            logger.debug(f"Ghostscript command: {' '.join(args)}")

            result = run_ghostscript(args, self.timeout, cancel_event)
            if result.returncode != 0:
                raise ConversionFailedError(f"Ghostscript exited with code {result.returncode}",
                                            returncode=result.returncode,
                                            stderr=(result.stderr or '')[-2000:])
            if not output_path.exists():
                raise ConversionFailedError("output file was not created")

            converted = output_path.read_bytes()
            if not converted:
                raise ConversionFailedError("output file is empty")

        logger.info(f"CMYK conversion successful: {len(converted):,} bytes")
        return converted

    def validate(self, pdf_bytes: bytes,
                 cancel_event: Optional[threading.Event] = None) -> ColorValidation:
        """
        Report which device color spaces a PDF declares.

        Raises:
            ValidationInconclusiveError: the analysis could not run.
        """
        if not self.executable:
            raise ValidationInconclusiveError("Ghostscript not found")

        with self._workdir() as workdir:
            input_path = Path(workdir) / 'check.pdf'
            analysis_path = Path(workdir) / 'analysis.pdf'
            input_path.write_bytes(pdf_bytes)

            # Uncompressed rewrite without object streams keeps color names and operators greppable
            args = [
                self.executable,
                '-dNOPAUSE', '-dBATCH', '-dSAFER', '-q',
                '-sDEVICE=pdfwrite',
                '-dCompressPages=false',
                '-dWriteObjStms=false',
                '-dWriteXRefStm=false',
                f'-sOutputFile={analysis_path}',
                str(input_path),
            ]
            try:
                result = run_ghostscript(args, self.timeout, cancel_event)
            except ConversionFailedError as e:
                raise ValidationInconclusiveError(e.reason)
            if result.returncode != 0 or not analysis_path.exists():
                raise ValidationInconclusiveError(f"analysis exited with code {result.returncode}")

            content = analysis_path.read_bytes()
            if not content:
                raise ValidationInconclusiveError("analysis output is empty")

        validation = ColorValidation(is_cmyk=CMYK_MARKERS.search(content) is not None,
                                     has_rgb=RGB_MARKERS.search(content) is not None)
        logger.debug(f"Color space analysis: {validation.to_dict()}")
        return validation

    def convert(self, pdf_bytes: bytes, options: Optional[ConversionOptions] = None,
                cancel_event: Optional[threading.Event] = None) -> CMYKConversionResult:
        """
        Convert and validate.

        Without Ghostscript the input comes back untouched with
        fully_converted=False. Conversion failures raise
        ConversionFailedError so the caller can keep the RGB document; a
        failed validation only means fully_converted=False.
        """
        original_size = len(pdf_bytes)
        if not self.is_available():
            logger.warning("CMYK conversion requested but Ghostscript is not available")
            return CMYKConversionResult(buffer=pdf_bytes, fully_converted=False,
                                        original_size=original_size, converted_size=original_size,
                                        error="Ghostscript not available")

        converted = self.convert_to_cmyk(pdf_bytes, options, cancel_event)

        try:
            validation = self.validate(converted, cancel_event)
        except ValidationInconclusiveError as e:
            logger.warning(f"{e.message}; treating output as not fully converted")
            validation = ColorValidation()

        fully_converted = validation.is_cmyk and not validation.has_rgb
        if not fully_converted:
            logger.warning(f"Partial CMYK conversion: {validation.to_dict()}")

        return CMYKConversionResult(buffer=converted, fully_converted=fully_converted,
                                    original_size=original_size, converted_size=len(converted),
                                    validation=validation)
