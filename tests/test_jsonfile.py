"""
Tests for JSON files — atomic replacement and failure taxonomy

Readers must only ever see a complete previous or complete new snapshot.
"""

import os

import orjson
import pytest

from teamcontext.core import jsonfile
from teamcontext.core.jsonfile import read_json, tmp_prefix_for, write_json
from teamcontext.core.models import Decision
from teamcontext.errors import DecodeError, StoreIOError


class TestReadWrite:

    def test_missing_file_reads_as_none(self, tmp_path):
        assert read_json(tmp_path / "absent.json") is None

    def test_round_trip(self, tmp_path):
        path = tmp_path / "sub" / "doc.json"
        write_json(path, {"a": [1, 2]})
        assert read_json(path) == {"a": [1, 2]}

    def test_output_is_indented_with_trailing_newline(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, [{"a": 1}])
        text = path.read_text()
        assert text.endswith("\n")
        assert '\n  {\n    "a": 1\n  }' in text

    def test_no_temp_file_left_behind(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, [])
        assert os.listdir(tmp_path) == ["doc.json"]

    def test_malformed_json_raises_decode_error(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_text("[{broken")
        with pytest.raises(DecodeError) as exc:
            read_json(path)
        assert exc.value.path == path

    def test_empty_file_raises_decode_error(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_text("")
        with pytest.raises(DecodeError, match="empty"):
            read_json(path)

    def test_unreadable_path_raises_io_error(self, tmp_path):
        directory = tmp_path / "doc.json"
        directory.mkdir()
        with pytest.raises(StoreIOError):
            read_json(directory)


class TestAtomicity:
    """A crash between temp-write and rename never corrupts the collection."""

    def test_failed_rename_keeps_previous_snapshot(self, tmp_path, monkeypatch):
        path = tmp_path / "decisions.json"
        write_json(path, [Decision(content="old", id="dec-1").to_dict()])

        def crash(src, dst):
            raise OSError("simulated crash before rename")

        monkeypatch.setattr(jsonfile.os, "replace", crash)
        with pytest.raises(StoreIOError):
            write_json(path, [Decision(content="new", id="dec-2").to_dict()])
        monkeypatch.undo()

        data = read_json(path)
        assert [d["content"] for d in data] == ["old"]
        assert os.listdir(tmp_path) == ["decisions.json"]

    def test_interleaved_writers_never_corrupt(self, tmp_path, monkeypatch):
        """
        A second writer runs to completion between the first writer's temp
        write and its rename. Each has its own temp file: the last rename
        wins and the file always parses.
        """
        path = tmp_path / "decisions.json"
        write_json(path, [{"content": "base"}])
        real_replace = os.replace
        interleaved = []

        def replace_after_second_writer(src, dst):
            if not interleaved:
                interleaved.append(src)
                write_json(path, [{"content": "base"}, {"content": "from second"}])
                assert read_json(path)[-1]["content"] == "from second"
            real_replace(src, dst)

        monkeypatch.setattr(jsonfile.os, "replace", replace_after_second_writer)
        write_json(path, [{"content": "base"}, {"content": "from first"}])
        monkeypatch.undo()

        assert [d["content"] for d in read_json(path)] == ["base", "from first"]
        assert os.listdir(tmp_path) == ["decisions.json"]

    def test_half_written_temp_file_is_invisible(self, tmp_path):
        path = tmp_path / "decisions.json"
        write_json(path, [{"content": "old"}])

        # Simulate a process killed mid-write: only the temp file is damaged
        (tmp_path / (tmp_prefix_for(path) + "k3j9x.tmp")).write_bytes(b'[{"content": "ne')

        assert read_json(path) == [{"content": "old"}]
        write_json(path, [{"content": "new"}])
        assert read_json(path) == [{"content": "new"}]

    def test_file_always_parses_between_writes(self, tmp_path):
        path = tmp_path / "log.json"
        for n in range(20):
            write_json(path, list(range(n)))
            assert orjson.loads(path.read_bytes()) == list(range(n))
            assert os.listdir(tmp_path) == ["log.json"]
