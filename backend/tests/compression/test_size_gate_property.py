"""Property-based tests for the output size gate and size reporting.

**Property: Size Gate**
"""

import os
import tempfile

import pytest
from hypothesis import given, settings, strategies as st

from app.modules.compression.errors import OutputTooLargeError
from app.modules.compression.service import (
    MB,
    check_output_size,
    compression_ratio,
    format_megabytes,
    format_ratio,
    format_seconds,
)


size_strategy = st.integers(min_value=0, max_value=4096)
positive_size_strategy = st.integers(min_value=1, max_value=10 * 1024 * MB)


def _write_file(directory: str, size: int) -> str:
    path = os.path.join(directory, "compressed.mp4")
    with open(path, "wb") as f:
        f.write(b"\0" * size)
    return path


class TestSizeGate:
    """Outputs above the ceiling are rejected before any upload."""

    @given(size=size_strategy, ceiling=size_strategy)
    @settings(max_examples=100)
    def test_passes_iff_size_within_ceiling(self, size: int, ceiling: int) -> None:
        """**Property: Size Gate**

        For any output size S and ceiling C, the gate passes iff S <= C and
        then reports S exactly.
        """
        with tempfile.TemporaryDirectory() as tmp:
            path = _write_file(tmp, size)

            if size <= ceiling:
                assert check_output_size(path, ceiling) == size
            else:
                with pytest.raises(OutputTooLargeError) as exc_info:
                    check_output_size(path, ceiling)
                assert exc_info.value.size_bytes == size
                assert exc_info.value.ceiling_bytes == ceiling

    def test_exactly_at_ceiling_passes(self, tmp_path) -> None:
        path = _write_file(str(tmp_path), 1024)

        assert check_output_size(path, 1024) == 1024

    def test_one_byte_over_ceiling_fails(self, tmp_path) -> None:
        path = _write_file(str(tmp_path), 1025)

        with pytest.raises(OutputTooLargeError):
            check_output_size(path, 1024)

    def test_error_reports_size_and_limit_in_megabytes(self) -> None:
        error = OutputTooLargeError(int(47.5 * MB), 45 * MB)

        assert error.status_code == 422
        assert "47.50MB" in error.message
        assert "45.00MB" in error.message


class TestCompressionRatio:
    """Ratio is the size reduction in percent."""

    @given(original=positive_size_strategy, compressed=positive_size_strategy)
    @settings(max_examples=100)
    def test_ratio_matches_definition(self, original: int, compressed: int) -> None:
        """**Property: Compression Ratio**

        For any original size O > 0 and compressed size X, the ratio is
        (1 - X/O) * 100 rounded to one decimal.
        """
        ratio = compression_ratio(original, compressed)

        assert ratio == round((1 - compressed / original) * 100, 1)
        assert ratio <= 100.0

    @given(original=positive_size_strategy, data=st.data())
    @settings(max_examples=100)
    def test_smaller_output_gives_non_negative_ratio(self, original: int, data) -> None:
        compressed = data.draw(st.integers(min_value=0, max_value=original))

        assert 0.0 <= compression_ratio(original, compressed) <= 100.0

    def test_grown_output_gives_negative_ratio(self) -> None:
        assert compression_ratio(100, 150) == -50.0

    def test_empty_original_gives_zero(self) -> None:
        assert compression_ratio(0, 100) == 0.0


class TestSizeFormatting:
    """Response strings use fixed precision and unit suffixes."""

    def test_megabytes_two_decimals(self) -> None:
        assert format_megabytes(50 * MB) == "50.00MB"
        assert format_megabytes(int(18.25 * MB)) == "18.25MB"
        assert format_megabytes(0) == "0.00MB"

    def test_ratio_one_decimal(self) -> None:
        assert format_ratio(64.0) == "64.0%"
        assert format_ratio(-12.34) == "-12.3%"

    def test_seconds_one_decimal(self) -> None:
        assert format_seconds(12.345) == "12.3s"
        assert format_seconds(0) == "0.0s"

    @given(size=st.integers(min_value=0, max_value=10 * 1024 * MB))
    @settings(max_examples=100)
    def test_megabytes_round_trip_within_precision(self, size: int) -> None:
        formatted = format_megabytes(size)

        assert formatted.endswith("MB")
        assert abs(float(formatted[:-2]) - size / MB) <= 0.0051
