"""Tests for skip bookkeeping and console summaries."""

from __future__ import annotations

import io
import logging

import pytest

from bitfreeze import report


class TestSkipLog:
    def test_records_in_order(self) -> None:
        log = report.SkipLog()
        log.add("a", report.VANISHED, "scan")
        log.add("b", report.PERMISSION_DENIED, "hash", "EACCES")
        assert [s.path for s in log] == ["a", "b"]
        assert len(log) == 2
        assert list(log)[1] == report.Skip("b", report.PERMISSION_DENIED, "hash", "EACCES")

    def test_counts(self) -> None:
        log = report.SkipLog()
        for reason in (report.VANISHED, report.VANISHED, report.IO_ERROR):
            log.add("p", reason)
        assert log.counts() == {report.VANISHED: 2, report.IO_ERROR: 1}

    def test_logs_a_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="bitfreeze.report"):
            report.SkipLog().add("etc/shadow", report.PERMISSION_DENIED, "hash")
        assert "etc/shadow" in caplog.text
        assert "permission-denied" in caplog.text


class TestOutput:
    def test_summary(self) -> None:
        out = io.StringIO()
        report.print_summary([("Total files scanned", 12345), ("Added size", "1.0 KiB")], out=out)
        text = out.getvalue()
        assert text.startswith("===== SUMMARY =====")
        assert "12,345" in text
        assert "1.0 KiB" in text

    def test_skips_are_limited(self) -> None:
        log = report.SkipLog()
        for i in range(15):
            log.add(f"f{i}", report.IO_ERROR)
        out = io.StringIO()
        report.print_skips(log, limit=10, out=out)
        text = out.getvalue()
        assert "SKIPPED (15: io-error=15)" in text
        assert "f9" in text
        assert "f10 " not in text
        assert "... and 5 more" in text

    def test_no_skips_prints_nothing(self) -> None:
        out = io.StringIO()
        report.print_skips(report.SkipLog(), out=out)
        assert out.getvalue() == ""

    @pytest.mark.parametrize(("text", "expected"), [
        ("short", "short"),
        ("x" * 40, "x" * 40),
        ("y" * 41, "y" * 37 + "..."),
    ])
    def test_truncate(self, text: str, expected: str) -> None:
        assert report.truncate(text) == expected

    @pytest.mark.parametrize(("n", "expected"), [
        (None, "?"),
        (512, "512 B"),
        (2048, "2.0 KiB"),
        (5 * 1024 ** 3, "5.0 GiB"),
    ])
    def test_format_bytes(self, n, expected: str) -> None:
        assert report.format_bytes(n) == expected
