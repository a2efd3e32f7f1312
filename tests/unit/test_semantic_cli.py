import io
import json
import logging
from pathlib import Path

import pytest

from findly.packages.common.findly_common.logging import logger as logger_module
from findly.packages.semantic.findly_semantic.cli import main


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, shop_definitions: str):
    monkeypatch.setenv("OTEL_SDK_DISABLED", "true")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(logger_module, "_initialized", False)
    root = logging.getLogger("")
    handlers = list(root.handlers)
    level = root.level
    (tmp_path / "definitions.yaml").write_text(shop_definitions, encoding="utf-8")

    yield tmp_path

    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_cli_prints_the_compiled_artifact(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    request = workspace / "request.json"
    request.write_text(json.dumps({"metrics": ["revenue"], "dimensions": ["country"], "limit": 3}), encoding="utf-8")

    exit_code = main(
        ["--definitions", str(workspace / "definitions.yaml"), "--request", str(request), "--dialect", "postgres"]
    )

    assert exit_code == 0
    artifact = json.loads(capsys.readouterr().out)
    assert artifact["group_by_columns"] == ["country"]
    assert artifact["metrics"] == ["revenue"]
    assert artifact["limit"] == "3"
    assert artifact["generated_sql"].startswith("WITH mega_table AS (")
    assert (workspace / "findly.log").exists()


def test_cli_reads_the_request_from_stdin(
    workspace: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"metrics": ["ctr"], "dimensions": ["campaign_name"]})))

    exit_code = main(["--definitions", str(workspace / "definitions.yaml"), "--request", "-"])

    assert exit_code == 0
    artifact = json.loads(capsys.readouterr().out)
    assert artifact["level"] == "campaign"


def test_cli_reports_semantic_errors(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    request = workspace / "request.json"
    request.write_text(json.dumps({"metrics": ["profit"]}), encoding="utf-8")

    exit_code = main(["--definitions", str(workspace / "definitions.yaml"), "--request", str(request)])

    captured = capsys.readouterr()
    assert exit_code == 2
    assert captured.out == ""
    assert "error:" in captured.err
    assert "profit" in captured.err
