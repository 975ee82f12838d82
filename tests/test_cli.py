"""Tests for the daybook command line."""
from __future__ import annotations

import json

import pytest

from daybook.cli import main


class TestParseCommand:
    def test_prints_parse_result(self, capsys):
        code = main(["parse", "Schedule lunch with Alice tomorrow at 1pm", "--now", "2024-03-11T09:00"])
        assert code == 0
        out = json.loads(capsys.readouterr().out)
        assert out["intent"] == "CREATE"
        assert out["entities"]["date"] == "2024-03-12"
        assert out["entities"]["time"] == "13:00"
        assert out["entities"]["participants"] == ["Alice"]

    def test_bad_reference_time(self, capsys):
        assert main(["parse", "tomorrow", "--now", "not-a-date"]) == 2
        assert "Invalid --now value" in capsys.readouterr().err

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            main([])


class TestMemoriesCommand:
    def test_import_then_export(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'daybook.db'}")
        document = {
            "userId": "alice",
            "memories": [{"key": "name", "value": "Alice", "category": "personal"}],
        }
        source = tmp_path / "in.json"
        source.write_text(json.dumps(document), encoding="utf-8")

        assert main(["memories", "import", "bob", str(source)]) == 0
        assert "Imported 1 memories for bob" in capsys.readouterr().out

        target = tmp_path / "out.json"
        assert main(["memories", "export", "bob", "--out", str(target)]) == 0
        exported = json.loads(target.read_text(encoding="utf-8"))
        assert exported["userId"] == "bob"
        assert [m["key"] for m in exported["memories"]] == ["name"]

    def test_unreadable_import_file(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'daybook.db'}")
        assert main(["memories", "import", "bob", str(tmp_path / "missing.json")]) == 1
        assert "Cannot read" in capsys.readouterr().err

    def test_missing_database_url(self, monkeypatch, capsys):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert main(["memories", "export", "bob"]) == 1
        assert "DATABASE_URL is required" in capsys.readouterr().err
