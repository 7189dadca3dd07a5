"""Tests for the semindex commands, run through click's CliRunner."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner, Result

from semindex.cli.main import cli
from semindex.index._internal.locking import WriteLock


class TestRebuild:
    """semindex rebuild."""

    def test_rebuild_json(self, invoke: Callable[..., Result]) -> None:
        result = invoke("rebuild", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["generation_id"] == "00000001"
        assert data["stats"]["units_total"] == 3
        assert data["stats"]["mode"] == "full"
        assert data["skipped"] == []

    def test_second_rebuild_is_incremental(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")

        data = json.loads(invoke("rebuild", "--json").stdout)

        assert data["generation_id"] == "00000002"
        assert data["stats"]["mode"] == "incremental"
        assert data["stats"]["new_chunks"] == 0

    def test_full_flag(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")
        data = json.loads(invoke("rebuild", "--full", "--json").stdout)
        assert data["stats"]["mode"] == "full"
        assert data["stats"]["reused_chunks"] == 0

    def test_human_output(self, invoke: Callable[..., Result]) -> None:
        result = invoke("rebuild")

        assert result.exit_code == 0
        assert "Generation 00000001" in result.output

    def test_source_option(self, invoke: Callable[..., Result], tmp_path: Path) -> None:
        other = tmp_path / "other"
        other.mkdir()
        (other / "only.txt").write_text("just one file")

        data = json.loads(invoke("rebuild", "--source", str(other), "--json").stdout)

        assert data["stats"]["units_total"] == 1

    def test_source_and_notes_exclusive(self, invoke: Callable[..., Result]) -> None:
        result = invoke("rebuild", "--notes", "--source", ".")
        assert result.exit_code == 2

    def test_busy_lock_exits_75(self, invoke: Callable[..., Result], project: Path) -> None:
        with WriteLock(project / ".semindex").acquire(session_id="elsewhere"):
            result = invoke("rebuild")

        assert result.exit_code == 75
        assert "INDEX_BUSY" in result.output


class TestQuery:
    """semindex query."""

    def test_query_json(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")

        result = invoke("query", "add", "two", "numbers", "--min-confidence", "0", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["query"] == "add two numbers"
        assert data["hits"][0]["rank"] == 1
        assert data["hits"][0]["unit_id"] == "add.py"
        confidences = [h["confidence"] for h in data["hits"]]
        assert confidences == sorted(confidences, reverse=True)

    def test_query_table(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")

        result = invoke("query", "add two numbers", "--min-confidence", "0")

        assert result.exit_code == 0
        assert "add.py" in result.output
        assert "Generation 00000001" in result.output

    def test_no_results_message(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")

        result = invoke("query", "zzzz qqqq", "--min-confidence", "100")

        assert result.exit_code == 0
        assert "No results above 100%" in result.output

    def test_k_option(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")
        result = invoke("query", "numbers", "-k", "1", "--min-confidence", "0", "--json")
        data = json.loads(result.stdout)
        assert len(data["hits"]) == 1

    def test_invalid_threshold(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")

        result = invoke("query", "add", "--min-confidence", "150")

        assert result.exit_code == 1
        assert "INVALID_THRESHOLD" in result.output

    def test_not_built(self, invoke: Callable[..., Result]) -> None:
        result = invoke("query", "add")

        assert result.exit_code == 1
        assert "INDEX_NOT_BUILT" in result.output


class TestSettings:
    """semindex settings."""

    def test_default(self, invoke: Callable[..., Result]) -> None:
        data = json.loads(invoke("settings", "--json").stdout)
        assert data == {"confidence_threshold": 60.0, "source": "default", "updated_at": None}

    def test_set_and_reset(self, invoke: Callable[..., Result], project: Path) -> None:
        data = json.loads(invoke("settings", "--set", "72.5", "--json").stdout)
        assert data["confidence_threshold"] == 72.5
        assert data["source"] == "settings"
        assert (project / ".semindex" / "settings.yaml").exists()

        data = json.loads(invoke("settings", "--reset", "--json").stdout)
        assert data["confidence_threshold"] == 60.0

    def test_set_applies_to_queries(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")
        invoke("settings", "--set", "100")

        data = json.loads(invoke("query", "zzzz", "--json").stdout)

        assert data["min_confidence"] == 100
        assert data["hits"] == []

    def test_out_of_range(self, invoke: Callable[..., Result]) -> None:
        invoke("settings", "--set", "40")

        result = invoke("settings", "--set", "101")

        assert result.exit_code == 1
        assert json.loads(invoke("settings", "--json").stdout)["confidence_threshold"] == 40

    def test_set_and_reset_exclusive(self, invoke: Callable[..., Result]) -> None:
        assert invoke("settings", "--set", "50", "--reset").exit_code == 2

    def test_human_output(self, invoke: Callable[..., Result]) -> None:
        result = invoke("settings")
        assert "Confidence threshold: 60% (from default)" in result.output


class TestStatus:
    """semindex status."""

    def test_empty_index(self, invoke: Callable[..., Result]) -> None:
        data = json.loads(invoke("status", "--json").stdout)

        assert data["generation_id"] is None
        assert data["chunk_count"] == 0
        assert data["lock"]["state"] == "free"
        assert data["active_model_id"] == "hashing-ngram-v1"

    def test_after_rebuild_and_query(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")
        invoke("query", "add", "--json")

        data = json.loads(invoke("status", "--json").stdout)

        assert data["generation_id"] == "00000001"
        assert data["unit_count"] == 3
        assert data["analytics"]["query_count"] == 1
        assert data["rebuild_required"] is False

    def test_human_output_shows_rebuild_required(
        self, invoke: Callable[..., Result], project: Path
    ) -> None:
        invoke("rebuild", "--json")
        (project / ".semindex" / "generations" / ".staging-00000002-dead").mkdir()

        result = invoke("status")

        assert result.exit_code == 0
        assert "00000001" in result.output
        assert "Rebuild required" in result.output

    def test_backend_switch_reports_mismatch(
        self, invoke: Callable[..., Result], project: Path
    ) -> None:
        invoke("rebuild", "--json")
        (project / ".semindex" / "config.yaml").write_text("embedding:\n  hashing_dim: 64\n")

        data = json.loads(invoke("status", "--json").stdout)

        assert data["model_mismatch"] is True
        assert data["rebuild_required"] is True
        assert invoke("query", "add").exit_code == 1
        rebuilt = json.loads(invoke("rebuild", "--json").stdout)
        assert rebuilt["stats"]["mode"] == "full"


class TestVerify:
    """semindex verify."""

    def test_nothing_to_verify(self, invoke: Callable[..., Result]) -> None:
        result = invoke("verify")
        assert result.exit_code == 0
        assert "No generation to verify" in result.output

    def test_passes(self, invoke: Callable[..., Result]) -> None:
        invoke("rebuild", "--json")

        result = invoke("verify", "--json")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["passed"] is True

    def test_fails_with_exit_1(self, invoke: Callable[..., Result], project: Path) -> None:
        invoke("rebuild", "--json")
        gen_dir = project / ".semindex" / "generations" / "00000001"
        with (gen_dir / "vectors.npz").open("ab") as f:
            f.write(b"tamper")

        result = invoke("verify")

        assert result.exit_code == 1
        assert "checksum" in result.output


class TestClean:
    """semindex clean."""

    def test_nothing_to_clean(self, invoke: Callable[..., Result]) -> None:
        result = invoke("clean", "--yes")
        assert "Nothing to clean" in result.output

    def test_yes_removes_generations(self, invoke: Callable[..., Result], project: Path) -> None:
        invoke("rebuild", "--json")
        invoke("settings", "--set", "55")

        result = invoke("clean", "--yes")

        assert result.exit_code == 0
        assert "Index cleaned" in result.output
        assert not (project / ".semindex" / "generations").exists()
        assert (project / ".semindex" / "settings.yaml").exists()

    def test_declined_prompt_keeps_index(
        self, invoke: Callable[..., Result], project: Path
    ) -> None:
        invoke("rebuild", "--json")
        prompt = MagicMock()
        prompt.ask.return_value = False

        with patch("semindex.cli.clean.questionary.select", return_value=prompt):
            result = invoke("clean")

        assert "Cancelled" in result.output
        assert (project / ".semindex" / "CURRENT").exists()


class TestNotes:
    """semindex notes add / list / rm, and rebuild --notes."""

    def test_add_list_rm(self, invoke: Callable[..., Result]) -> None:
        result = invoke("notes", "add", "rain", "expected", "--tag", "w", "--json")
        added = json.loads(result.stdout)
        assert added["text"] == "rain expected"
        assert added["tags"] == ["w"]

        listed = json.loads(invoke("notes", "list", "--json").stdout)
        assert [n["note_id"] for n in listed] == [added["note_id"]]

        assert invoke("notes", "rm", added["note_id"]).exit_code == 0
        assert json.loads(invoke("notes", "list", "--json").stdout) == []

    def test_rm_unknown(self, invoke: Callable[..., Result]) -> None:
        result = invoke("notes", "rm", "nope")
        assert result.exit_code == 1
        assert "No note with id nope" in result.output

    def test_empty_text_rejected(self, invoke: Callable[..., Result]) -> None:
        assert invoke("notes", "add", "  ").exit_code == 2

    def test_add_with_provenance(self, invoke: Callable[..., Result]) -> None:
        invoke(
            "notes", "add", "use uv", "--source", "user_message", "--meta", "conversation_id=c1"
        )

        (listed,) = json.loads(invoke("notes", "list", "--json").stdout)
        assert listed["source"] == "user_message"
        assert listed["metadata"]["conversation_id"] == "c1"

    def test_bad_meta_rejected(self, invoke: Callable[..., Result]) -> None:
        assert invoke("notes", "add", "x", "--meta", "novalue").exit_code == 2
        assert invoke("notes", "add", "x", "--source", "telepathy").exit_code == 2

    def test_rebuild_notes_and_query(self, invoke: Callable[..., Result]) -> None:
        note = json.loads(invoke("notes", "add", "deploys happen on friday", "--json").stdout)

        rebuilt = json.loads(invoke("rebuild", "--notes", "--json").stdout)
        data = json.loads(
            invoke("query", "deploys happen on friday", "--min-confidence", "0", "--json").stdout
        )

        assert rebuilt["stats"]["units_total"] == 1
        assert data["hits"][0]["unit_id"] == f"note:{note['note_id']}"
        assert data["hits"][0]["kind"] == "note"


class TestMain:
    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help_lists_commands(self) -> None:
        result = CliRunner().invoke(cli, ["--help"])
        for name in ("rebuild", "query", "settings", "status", "verify", "clean", "notes"):
            assert name in result.output
