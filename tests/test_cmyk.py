"""
Unit tests for CMYK conversion and validation.

Ghostscript itself is mocked except in TestWithGhostscript, which only runs
when gs is installed.
"""

import io
import shutil
import subprocess
import sys
import threading
from unittest.mock import patch

import pytest
from reportlab.lib.colors import CMYKColor
from reportlab.pdfgen import canvas as pdf_canvas

from cardmerge import cmyk
from cardmerge.cmyk import (
    CMYK_COLORS, CMYKConverter, ConversionOptions, cmyk_color,
    is_converter_available, run_ghostscript
)
from cardmerge.errors import ConversionFailedError, ValidationInconclusiveError


FAKE_GS = '/opt/fake/gs'


def sample_pdf() -> bytes:
    buffer = io.BytesIO()
    pdf = pdf_canvas.Canvas(buffer, pagesize=(200, 200))
    pdf.setFillColorRGB(1, 0, 0)
    pdf.rect(10, 10, 50, 50, fill=1, stroke=0)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def output_path(args):
    for arg in args:
        if arg.startswith('-sOutputFile='):
            return arg.split('=', 1)[1]
    raise AssertionError("no output file argument")


def fake_ghostscript(convert_output=b'%PDF-1.7 cmyk', analysis=b'/DeviceCMYK', returncode=0):
    """run_ghostscript stand-in that writes the requested output file"""
    calls = []

    def run(args, timeout, cancel_event=None):
        calls.append(args)
        if returncode == 0:
            content = analysis if '-dCompressPages=false' in args else convert_output
            with open(output_path(args), 'wb') as f:
                f.write(content)
        return subprocess.CompletedProcess(args, returncode, '', 'gs error text')

    run.calls = calls
    return run


@pytest.fixture
def converter(tmp_path):
    return CMYKConverter(ghostscript_path=FAKE_GS, timeout=5, temp_dir=str(tmp_path / 'tmp'))


class TestPalette:
    """Test the CMYK color constants."""

    def test_cmyk_color_uses_percentages(self):
        color = cmyk_color(100, 80, 0, 20)

        assert isinstance(color, CMYKColor)
        assert (color.cyan, color.magenta, color.yellow, color.black) == pytest.approx((1.0, 0.8, 0.0, 0.2))

    def test_palette_values(self):
        assert CMYK_COLORS['BLACK'].black == 1.0
        assert CMYK_COLORS['LIGHT_GRAY'].black == pytest.approx(0.2)
        assert CMYK_COLORS['RED'].magenta == 1.0 and CMYK_COLORS['RED'].yellow == 1.0
        assert set(CMYK_COLORS) >= {'BLACK', 'WHITE', 'CYAN', 'MAGENTA', 'YELLOW',
                                    'RED', 'GREEN', 'DARK_BLUE', 'GRAY', 'LIGHT_GRAY'}


class TestProbe:
    """Test the capability probe."""

    def setup_method(self):
        cmyk.invalidate_probe()

    def teardown_method(self):
        cmyk.invalidate_probe()

    def test_missing_executable_is_unavailable(self):
        assert is_converter_available('/nonexistent/bin/gs') is False

    def test_probe_is_memoized_until_invalidated(self):
        completed = subprocess.CompletedProcess(['gs'], 0, '10.02.1\n', '')
        with patch('cardmerge.cmyk.subprocess.run', return_value=completed) as run:
            assert is_converter_available(FAKE_GS)
            assert is_converter_available(FAKE_GS)
            assert run.call_count == 1

            cmyk.invalidate_probe()
            assert cmyk.ghostscript_version(FAKE_GS) == '10.02.1'
            assert run.call_count == 2

    def test_failing_probe(self):
        completed = subprocess.CompletedProcess(['gs'], 1, '', 'broken')
        with patch('cardmerge.cmyk.subprocess.run', return_value=completed):
            assert not is_converter_available(FAKE_GS)


class TestRunGhostscript:
    """Test subprocess timeout and cancellation."""

    def test_timeout_kills_process(self):
        with pytest.raises(ConversionFailedError) as exc_info:
            run_ghostscript([sys.executable, '-c', 'import time; time.sleep(10)'], timeout=0.5)
        assert 'timed out' in exc_info.value.reason

    def test_cancellation_kills_process(self):
        event = threading.Event()
        threading.Timer(0.3, event.set).start()

        with pytest.raises(ConversionFailedError) as exc_info:
            run_ghostscript([sys.executable, '-c', 'import time; time.sleep(10)'], timeout=10,
                            cancel_event=event)
        assert exc_info.value.reason == 'cancelled'

    def test_missing_executable(self):
        with pytest.raises(ConversionFailedError):
            run_ghostscript(['/nonexistent/bin/gs', '--version'], timeout=1)

    def test_completed_process(self):
        result = run_ghostscript([sys.executable, '-c', 'print("ok")'], timeout=10)

        assert result.returncode == 0
        assert result.stdout.strip() == 'ok'


class TestCMYKConverter:
    """Test conversion, validation and the combined result."""

    def test_unavailable_converter_returns_input(self, converter):
        pdf = sample_pdf()
        with patch.object(CMYKConverter, 'is_available', return_value=False):
            result = converter.convert(pdf)

        assert result.buffer == pdf
        assert result.fully_converted is False
        assert result.converted is False
        assert result.original_size == result.converted_size == len(pdf)
        assert result.error == "Ghostscript not available"

    def test_convert_args(self, converter, tmp_path):
        args = converter.build_convert_args(tmp_path / 'in.pdf', tmp_path / 'out.pdf',
                                            ConversionOptions(image_quality='medium'))

        assert args[0] == FAKE_GS
        assert '-sProcessColorModel=DeviceCMYK' in args
        assert '-sColorConversionStrategy=CMYK' in args
        assert '-sColorConversionStrategyForImages=CMYK' in args
        assert '-dColorImageResolution=150' in args
        assert not any(a.startswith('-dPDFX') for a in args)
        assert args[-1] == str(tmp_path / 'in.pdf')

    def test_pdfx3_args(self, converter, tmp_path):
        options = ConversionOptions(pdfx3=True, color_profile='/profiles/coated.icc')
        args = converter.build_convert_args(tmp_path / 'in.pdf', tmp_path / 'out.pdf', options)

        assert '-dPDFX=3' in args
        assert '-sOutputICCProfile=/profiles/coated.icc' in args
        assert '-dColorImageResolution=300' in args

    def test_successful_conversion(self, converter, tmp_path):
        fake = fake_ghostscript()
        with patch.object(CMYKConverter, 'is_available', return_value=True), \
                patch('cardmerge.cmyk.run_ghostscript', side_effect=fake):
            result = converter.convert(sample_pdf())

        assert result.buffer == b'%PDF-1.7 cmyk'
        assert result.fully_converted is True
        assert result.validation.to_dict() == {'isCMYK': True, 'hasRGB': False}
        assert len(fake.calls) == 2
        assert list((tmp_path / 'tmp').iterdir()) == []

    def test_remaining_rgb_is_partial(self, converter):
        fake = fake_ghostscript(analysis=b'/DeviceCMYK ... /DeviceRGB')
        with patch.object(CMYKConverter, 'is_available', return_value=True), \
                patch('cardmerge.cmyk.run_ghostscript', side_effect=fake):
            result = converter.convert(sample_pdf())

        assert result.fully_converted is False
        assert result.validation.has_rgb is True

    def test_nonzero_exit_raises_and_cleans_up(self, converter, tmp_path):
        with patch('cardmerge.cmyk.run_ghostscript', side_effect=fake_ghostscript(returncode=1)):
            with pytest.raises(ConversionFailedError) as exc_info:
                converter.convert_to_cmyk(sample_pdf())

        assert exc_info.value.details['returncode'] == 1
        assert exc_info.value.details['stderr'] == 'gs error text'
        assert list((tmp_path / 'tmp').iterdir()) == []

    def test_empty_output_raises(self, converter):
        with patch('cardmerge.cmyk.run_ghostscript', side_effect=fake_ghostscript(convert_output=b'')):
            with pytest.raises(ConversionFailedError) as exc_info:
                converter.convert_to_cmyk(sample_pdf())
        assert exc_info.value.reason == 'output file is empty'

    def test_missing_output_raises(self, converter):
        completed = subprocess.CompletedProcess([], 0, '', '')
        with patch('cardmerge.cmyk.run_ghostscript', return_value=completed):
            with pytest.raises(ConversionFailedError) as exc_info:
                converter.convert_to_cmyk(sample_pdf())
        assert exc_info.value.reason == 'output file was not created'

    def test_timeout_propagates_from_convert(self, converter):
        with patch.object(CMYKConverter, 'is_available', return_value=True), \
                patch('cardmerge.cmyk.run_ghostscript',
                      side_effect=ConversionFailedError('timed out after 5s')):
            with pytest.raises(ConversionFailedError):
                converter.convert(sample_pdf())

    def test_inconclusive_validation_is_not_fully_converted(self, converter):
        with patch.object(CMYKConverter, 'is_available', return_value=True), \
                patch('cardmerge.cmyk.run_ghostscript', side_effect=fake_ghostscript()), \
                patch.object(CMYKConverter, 'validate',
                             side_effect=ValidationInconclusiveError('analysis exited with code 1')):
            result = converter.convert(sample_pdf())

        assert result.buffer == b'%PDF-1.7 cmyk'
        assert result.fully_converted is False
        assert result.validation.to_dict() == {'isCMYK': False, 'hasRGB': False}

    def test_validation_reads_color_operators(self, converter):
        content = b"q\n0 0 0 1 k\n10 10 50 50 re f\n1 0 0 RG\n0 0 m 5 5 l S\nQ"
        with patch('cardmerge.cmyk.run_ghostscript', side_effect=fake_ghostscript(analysis=content)):
            validation = converter.validate(sample_pdf())

        assert validation.to_dict() == {'isCMYK': True, 'hasRGB': True}

    def test_validation_failure_raises_inconclusive(self, converter):
        with patch('cardmerge.cmyk.run_ghostscript', side_effect=fake_ghostscript(returncode=2)):
            with pytest.raises(ValidationInconclusiveError):
                converter.validate(sample_pdf())


@pytest.mark.skipif(shutil.which('gs') is None, reason="Ghostscript not installed")
class TestWithGhostscript:
    """Real conversions; skipped without gs on PATH."""

    def setup_method(self):
        cmyk.invalidate_probe()

    def test_rgb_pdf_becomes_cmyk(self, tmp_path):
        converter = CMYKConverter(temp_dir=str(tmp_path))
        source = sample_pdf()

        before = converter.validate(source)
        result = converter.convert(source)

        assert before.has_rgb is True
        assert result.fully_converted is True
        assert result.buffer.startswith(b'%PDF')

    def test_palette_survives_conversion(self, tmp_path):
        buffer = io.BytesIO()
        pdf = pdf_canvas.Canvas(buffer, pagesize=(300, 100))
        for i, name in enumerate(['CYAN', 'MAGENTA', 'YELLOW', 'BLACK', 'DARK_BLUE']):
            pdf.setFillColor(CMYK_COLORS[name])
            pdf.rect(10 + i * 55, 10, 50, 50, fill=1, stroke=0)
        pdf.showPage()
        pdf.save()

        result = CMYKConverter(temp_dir=str(tmp_path)).convert(buffer.getvalue())

        assert result.validation.is_cmyk is True
        assert result.validation.has_rgb is False
