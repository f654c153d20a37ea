"""
Tests for the command line entry point.
"""
import json
from unittest.mock import patch

import pytest

from pack_rag import cli


@pytest.fixture
def disk_settings(settings, pack_dir):
    return settings.model_copy(update={"PACK_ROOT": str(pack_dir)})


def test_cli_answer(disk_settings, backend, tmp_path, capsys):
    out = tmp_path / "diag.json"

    with patch('pack_rag.cli.get_settings', return_value=disk_settings), \
            patch('pack_rag.cli.get_embedder', return_value=backend):
        cli.main(["What does Blood Moon do?", "--trace", "-o", str(out)])

    printed = capsys.readouterr().out
    assert "ANSWER" in printed
    assert backend.answer in printed
    assert "VALIDATION" in printed
    assert "TOP 5 FUSED HITS" in printed
    assert backend.closed

    diagnostics = json.loads(out.read_text())
    assert diagnostics["question"] == "What does Blood Moon do?"
    assert diagnostics["summary"]["stats"]["rule_hit_rate"] == 1
    assert diagnostics["hits"][0]["doc_id"] == "rules:0"
    assert diagnostics["answer_changed"] is False


def test_cli_dry_run(disk_settings, backend, tmp_path, capsys):
    out = tmp_path / "diag.json"

    with patch('pack_rag.cli.get_settings', return_value=disk_settings), \
            patch('pack_rag.cli.get_embedder', return_value=backend):
        cli.main(["What does Blood Moon do?", "--dry-run", "-o", str(out)])

    printed = capsys.readouterr().out
    assert "PROMPT" in printed
    assert "Question: What does Blood Moon do?" in printed
    assert "ANSWER" not in printed
    assert backend.prompts == []
    assert json.loads(out.read_text())["dry_run"] is True


def test_cli_pack_root_override(settings, pack_dir, backend, tmp_path):
    out = tmp_path / "diag.json"

    with patch('pack_rag.cli.get_settings', return_value=settings), \
            patch('pack_rag.cli.get_embedder', return_value=backend) as mock_get_embedder:
        cli.main(["q", "--pack-root", str(pack_dir), "--backend", "local", "--flag-unknown", "-o", str(out)])

    used = mock_get_embedder.call_args[0][0]
    assert used.PACK_ROOT == str(pack_dir)
    assert used.MODEL_BACKEND == "local"
    assert used.FLAG_UNKNOWN_WORDS is True


def test_cli_missing_pack_exits(settings, backend, tmp_path):
    out = tmp_path / "diag.json"
    missing = settings.model_copy(update={"PACK_ROOT": str(tmp_path / "nope")})

    with patch('pack_rag.cli.get_settings', return_value=missing), \
            patch('pack_rag.cli.get_embedder', return_value=backend):
        with pytest.raises(SystemExit) as exc:
            cli.main(["q", "-o", str(out)])

    assert exc.value.code == 1
    assert json.loads(out.read_text())["error"]["code"] == "E_PACK_LOAD"


def test_cli_pipeline_error_exits(disk_settings, backend, tmp_path):
    out = tmp_path / "diag.json"
    backend.vector = [1.0]

    with patch('pack_rag.cli.get_settings', return_value=disk_settings), \
            patch('pack_rag.cli.get_embedder', return_value=backend):
        with pytest.raises(SystemExit) as exc:
            cli.main(["q", "-o", str(out)])

    assert exc.value.code == 1
    assert json.loads(out.read_text())["error"]["code"] == "E_EMBED_DIM"


@pytest.mark.parametrize("missing_file", ["cards/chunks.jsonl", "rules/vectors.f32"])
def test_cli_missing_pack_file_exits(disk_settings, pack_dir, backend, tmp_path, missing_file):
    out = tmp_path / "diag.json"
    (pack_dir / missing_file).unlink()

    with patch('pack_rag.cli.get_settings', return_value=disk_settings), \
            patch('pack_rag.cli.get_embedder', return_value=backend):
        with pytest.raises(SystemExit) as exc:
            cli.main(["q", "-o", str(out)])

    assert exc.value.code == 1
    error = json.loads(out.read_text())["error"]
    assert error["code"] == "E_PACK_LOAD"
    assert error["details"]["path"] == missing_file
