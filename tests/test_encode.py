"""
Unit tests for encoding functionality: part splitting and image rendering
"""

import io
import math
import os
import sys
import pytest

# Add parent directory to path to import qrstream
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import qrstream as qrs
from PIL import Image
from qrcode.exceptions import DataOverflowError


class TestErrorCorrection:
    """Test error correction level parsing"""

    def test_valid_levels(self):
        for token in ('L', 'M', 'Q', 'H', 'q', ' h '):
            assert qrs.parse_ec_level(token) in qrs.ERROR_CORRECTION_LEVELS

    def test_invalid_level(self):
        with pytest.raises(qrs.ValueValidationError, match="invalid ec-level X"):
            qrs.parse_ec_level('X')

    def test_higher_level_reduces_capacity(self):
        """Test that the same text needs a larger QR version at level H"""
        text = qrs.format_frame("A" * 200, 0, 1)

        qr_l = qrs.create_qr_code(text, 'L')
        qr_h = qrs.create_qr_code(text, 'H')

        assert qr_h.version > qr_l.version


class TestPartSplitting:
    """Test the minimal part count search"""

    def test_small_data_single_part(self):
        """Test that small data fits in one part"""
        parts = qrs.split_into_parts("SGVsbG8gV29ybGQ", 'Q')

        assert len(parts) == 1
        assert parts[0][0] == "QRST/1;p=11;t=SGVsbG8gV29ybGQ"

    def test_empty_text(self):
        """Test that empty data still produces one frame"""
        parts = qrs.split_into_parts("", 'Q')

        assert [line for line, _ in parts] == ["QRST/1;p=11;t="]

    def test_parts_cover_text(self):
        """Test that the parts are contiguous equal-size slices"""
        text = qrs.b64url_encode(os.urandom(3000))
        parts = qrs.split_into_parts(text, 'M')
        count = len(parts)
        part_len = math.ceil(len(text) / count)

        assert count > 1
        fragments = [qrs.parse_frame(line) for line, _ in parts]
        assert [f['part_index'] for f in fragments] == list(range(count))
        assert all(f['part_count'] == count for f in fragments)
        assert all(len(f['text']) == part_len for f in fragments[:-1])
        assert ''.join(f['text'] for f in fragments) == text

    def test_part_count_is_minimal(self):
        """Test that one part fewer would not fit the first slice"""
        text = qrs.b64url_encode(os.urandom(4000))
        parts = qrs.split_into_parts(text, 'H')
        count = len(parts)

        assert count > 1
        fewer = count - 1
        first = qrs.format_frame(text[:math.ceil(len(text) / fewer)], 0, fewer)
        with pytest.raises(DataOverflowError):
            qrs.create_qr_code(first, 'H')

    def test_oversized_text_is_overflow(self):
        """Test that text beyond version 40 is reported as DataOverflowError"""
        with pytest.raises(DataOverflowError):
            qrs.create_qr_code("a" * 3000, 'H')

    def test_sixteen_parts(self):
        """Test data needing exactly 16 parts, where 16 is written as 0"""
        # Lowercase text is byte mode: 1273 bytes per version 40-H symbol,
        # 14 of them taken by the frame header. 15 parts need 1334 each.
        data = qrs.b64url_decode("a" * 16 * 1250)

        parts = qrs.encode_data(data, None, 'H')
        lines = [line for line, _ in parts]

        assert len(parts) == 16
        assert lines[0].startswith("QRST/1;p=10;t=")
        assert lines[-1].startswith("QRST/1;p=00;t=")
        assert qrs.decode_data('\n'.join(reversed(lines))) == data

    def test_data_too_large(self):
        """Test that more than 16 parts is a usage error"""
        text = "A" * 16 * 3000

        with pytest.raises(qrs.DataTooLargeError, match="data too large to encode"):
            qrs.split_into_parts(text, 'H')

    def test_invalid_level_is_fatal(self):
        """Test that errors other than overflow abort the search"""
        with pytest.raises(qrs.ValueValidationError):
            qrs.split_into_parts("abc", 'Z')


class TestImageRendering:
    """Test QR code rendering and PNG tiling"""

    def test_pixels_per_module(self):
        assert qrs.pixels_per_module(21) == 17
        assert qrs.pixels_per_module(90) == 4
        assert qrs.pixels_per_module(177) == 4

    def test_qr_to_array(self):
        """Test module expansion and colors"""
        qr = qrs.create_qr_code(qrs.format_frame("abc", 0, 1))
        modules = qr.modules_count
        scale = qrs.pixels_per_module(modules)

        pixels = qrs.qr_to_array(qr)

        assert pixels.shape == (modules * scale, modules * scale)
        assert set(pixels.flatten().tolist()) == {0, 255}
        # Top-left finder pattern corner is dark
        assert pixels[0, 0] == 0

    def test_single_code_png(self):
        """Test PNG signature, mode and size for one code"""
        qr = qrs.create_qr_code(qrs.format_frame("SGVsbG8gV29ybGQ", 0, 1))
        size = qr.modules_count * qrs.pixels_per_module(qr.modules_count)

        png = qrs.generate_png([qr])

        assert png.startswith(b"\x89PNG\r\n\x1a\n")
        img = Image.open(io.BytesIO(png))
        assert img.mode == 'L'
        assert img.size == (size + 2 * qrs.IMAGE_SPACING, size + 2 * qrs.IMAGE_SPACING)
        # Border is white
        assert img.getpixel((0, 0)) == 255

    def test_grid_layout(self):
        """Test canvas size for 3 codes with 2 per row"""
        qrs_list = [qrs.create_qr_code(qrs.format_frame(t, i, 3))
                    for i, t in enumerate(["A" * 50, "B" * 50, "C" * 10])]
        cell = max(qr.modules_count * qrs.pixels_per_module(qr.modules_count) for qr in qrs_list)

        img = Image.open(io.BytesIO(qrs.generate_png(qrs_list, qr_per_row=2)))

        expected = qrs.IMAGE_SPACING + 2 * (cell + qrs.IMAGE_SPACING)
        assert img.size == (expected, expected)

    def test_row_narrower_than_qr_per_row(self):
        """Test that unused columns do not widen the canvas"""
        qr = qrs.create_qr_code(qrs.format_frame("abc", 0, 1))

        narrow = Image.open(io.BytesIO(qrs.generate_png([qr], qr_per_row=1)))
        wide = Image.open(io.BytesIO(qrs.generate_png([qr], qr_per_row=4)))

        assert narrow.size == wide.size

    def test_invalid_qr_per_row(self):
        qr = qrs.create_qr_code(qrs.format_frame("abc", 0, 1))
        with pytest.raises(qrs.ValueValidationError):
            qrs.generate_png([qr], qr_per_row=0)


class TestEncodeOutput:
    """Test the encode() entry point"""

    def test_txt_output(self):
        """Test the framed line for Hello World"""
        output = qrs.encode(b"Hello World", out_format='txt')

        assert output.startswith(b"QRST/1;p=11;t=")
        assert output == b"QRST/1;p=11;t=SGVsbG8gV29ybGQ\n"

    def test_png_output(self):
        assert qrs.encode(b"Hello World", out_format='png').startswith(b"\x89PNG\r\n\x1a\n")

    def test_encrypted_txt_output(self):
        """Test that encrypted output is framed the same way but hides the data"""
        output = qrs.encode(b"Hello World", key=bytes(32), out_format='txt')

        assert output.startswith(b"QRST/1;p=11;t=")
        assert b"SGVsbG8gV29ybGQ" not in output

    def test_invalid_format(self):
        with pytest.raises(qrs.ValueValidationError, match="invalid output format"):
            qrs.encode(b"data", out_format='gif')


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
