"""
Unit tests for the output sink.

Tests cover:
- Rendering formats
- Atomic file replacement
- Standard output
- Failure cleanup
"""

import io
import os

import pytest

from synapse_gc.sg_finder.errors import OutputError
from synapse_gc.sg_finder.output import render_ids, write_ids, write_text_atomic


class TestRenderIds:
    """Tests for render_ids()."""

    def test_lines(self):
        assert render_ids([4, 20, 21]) == "4\n20\n21\n"

    def test_csv(self):
        assert render_ids([4, 20, 21], "csv") == "4,20,21\n"

    @pytest.mark.parametrize("fmt", ["lines", "csv"])
    def test_empty(self, fmt):
        assert render_ids([], fmt) == ""

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            render_ids([1], "xml")


class TestWriteIds:
    """Tests for write_ids()."""

    def test_writes_file(self, tmp_path):
        target = tmp_path / "unreferenced.txt"

        count = write_ids([1, 2, 3], target)

        assert count == 3
        assert target.read_text() == "1\n2\n3\n"

    def test_replaces_existing_file_and_leaves_no_temp(self, tmp_path):
        target = tmp_path / "unreferenced.txt"
        target.write_text("stale\n")

        write_ids([7], target, "csv")

        assert target.read_text() == "7\n"
        assert os.listdir(tmp_path) == ["unreferenced.txt"]

    def test_writes_stream_in_one_piece(self):
        stream = io.StringIO()
        assert write_ids(iter([5, 6]), stream=stream) == 2
        assert stream.getvalue() == "5\n6\n"

    def test_missing_directory_raises_output_error(self, tmp_path):
        target = tmp_path / "nope" / "out.txt"

        with pytest.raises(OutputError) as exc_info:
            write_ids([1], target)

        assert exc_info.value.path == str(target)
        assert exc_info.value.exit_code == 6
        assert not target.exists()

    def test_failed_replace_removes_temp_file(self, tmp_path, monkeypatch):
        target = tmp_path / "out.txt"

        def fail_replace(src, dst):
            raise PermissionError("read-only")

        monkeypatch.setattr(os, "replace", fail_replace)

        with pytest.raises(OutputError):
            write_ids([1, 2], target)

        assert os.listdir(tmp_path) == []

    def test_write_text_atomic(self, tmp_path):
        target = tmp_path / "report.json"
        write_text_atomic(target, "{}\n")
        assert target.read_text() == "{}\n"
