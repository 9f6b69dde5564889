"""Tests for atomic store/archive writes."""

import json
import os

import pytest

from inline_feedback.atomic_write import atomic_write_json, atomic_write_text, dump_json


def temp_files(directory):
    return [p for p in directory.iterdir() if ".tmp_" in p.name]


def test_write_creates_parent_and_file(tmp_path):
    target = tmp_path / ".feedback" / "store.json"

    atomic_write_text('{"version": 1}\n', target)

    assert target.read_text() == '{"version": 1}\n'
    assert os.stat(target).st_mode & 0o777 == 0o644
    assert temp_files(target.parent) == []


def test_bytes_written_verbatim(tmp_path):
    """No newline translation and UTF-8 encoding."""
    target = tmp_path / "store.json"

    atomic_write_text("a\r\nb\né", target)

    assert target.read_bytes() == b"a\r\nb\n\xc3\xa9"


def test_replace_failure_keeps_original(tmp_path, monkeypatch):
    """A failed rename leaves the old document and no temp files."""
    target = tmp_path / "store.json"
    target.write_text("old\n")

    def broken_replace(src, dst):
        raise OSError("simulated rename failure")

    monkeypatch.setattr(os, "replace", broken_replace)

    with pytest.raises(OSError, match="simulated"):
        atomic_write_text("new\n", target)

    assert target.read_text() == "old\n"
    assert temp_files(tmp_path) == []


def test_unserializable_json_writes_nothing(tmp_path):
    target = tmp_path / "archive.json"

    with pytest.raises(TypeError):
        atomic_write_json({"bad": object()}, target)

    assert not target.exists()
    assert temp_files(tmp_path) == []


def test_dump_json_format():
    """2-space indent, non-ASCII kept, trailing newline, insertion order."""
    text = dump_json({"version": 1, "comments": [{"body": "café"}]})

    assert text.endswith("}\n")
    assert '\n  "comments": [' in text
    assert "café" in text
    assert list(json.loads(text)) == ["version", "comments"]


def test_atomic_write_json_returns_written_text(tmp_path):
    target = tmp_path / "archive.json"

    content = atomic_write_json({"version": 1, "comments": []}, target)

    assert target.read_text(encoding="utf-8") == content
