"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

import run
from mangapub.bootstrap import BootstrapError
from mangapub.services import naming
from mangapub.services.settings import WebPConfigStore
from mangapub.services.storage import ChapterStatus


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def cli_config(temp_config, monkeypatch):
    monkeypatch.setattr(run, "_load", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root, verbose=False: None)
    return temp_config


def test_serve_builds_uvicorn_server(monkeypatch, tmp_path):
    captured = {}
    orchestrator = object()

    monkeypatch.setattr(run, "_load", lambda: SimpleNamespace(storage_root=tmp_path))
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root, verbose=False: None)
    monkeypatch.setattr(run, "_build_orchestrator", lambda config: (None, orchestrator))

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def _create_app(received, config):
        captured["orchestrator"] = received
        return dummy_app

    monkeypatch.setattr(run, "create_app", _create_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000)

    assert captured["orchestrator"] is orchestrator
    assert captured["app"] is dummy_app
    assert captured["config_kwargs"] == {"host": "0.0.0.0", "port": 9000, "log_config": None}
    assert dummy_app.state.server is captured["server_instance"]
    assert captured["server_run"] is True


def test_no_command_launches_server(monkeypatch, runner):
    calls = []
    monkeypatch.setattr(run, "serve", lambda host, port: calls.append((host, port)))

    result = runner.invoke(run.cli, [])

    assert result.exit_code == 0
    assert calls == [(run.DEFAULT_HOST, run.DEFAULT_PORT)]


def test_bootstrap_failure_exits_with_code_two(monkeypatch, runner):
    def _broken():
        raise BootstrapError("database is locked")

    monkeypatch.setattr(run, "initialize_app", _broken)

    result = runner.invoke(run.cli, ["pending"])

    assert result.exit_code == 2
    assert "database is locked" in result.output


def test_approve_command_publishes(cli_config, runner, repository, staging, make_chapter, image_bytes):
    chapter = make_chapter()
    prefix = naming.staging_prefix(chapter.manga_id, chapter.id)
    staging.put(prefix + "001.jpg", image_bytes("JPEG"))
    repository.add_page(chapter.id, 1, file_name="001.jpg")

    result = runner.invoke(run.cli, ["approve", str(chapter.id)])

    assert result.exit_code == 0, result.output
    assert f"Chapter {chapter.id} published" in result.output
    assert repository.get_chapter(chapter.id).chapter_status is ChapterStatus.PUBLISHED


def test_approve_command_reports_pipeline_errors(cli_config, runner):
    result = runner.invoke(run.cli, ["approve", "4242"])

    assert result.exit_code == 1
    assert "ChapterNotFound" in result.output


def test_reject_command_marks_terminal(cli_config, runner, repository, make_chapter):
    chapter = make_chapter()
    repository.add_page(chapter.id, 1, file_name="001.jpg")

    result = runner.invoke(run.cli, ["reject", str(chapter.id), "--terminal", "--reason", "spam"])

    assert result.exit_code == 0, result.output
    updated = repository.get_chapter(chapter.id)
    assert updated.chapter_status is ChapterStatus.REJECTED
    assert updated.rejection_reason == "spam"
    assert repository.count_pages(chapter.id) == 0


def test_pending_command_lists_chapters(cli_config, runner, make_chapter):
    make_chapter()

    result = runner.invoke(run.cli, ["pending"])

    assert result.exit_code == 0
    assert "Pending chapters" in result.output


def test_webp_config_command_updates_and_validates(cli_config, runner, repository):
    updated = runner.invoke(run.cli, ["webp-config", "--publish-quality", "70"])

    assert updated.exit_code == 0, updated.output
    assert WebPConfigStore(repository).load().publish_quality == 70

    invalid = runner.invoke(run.cli, ["webp-config", "--effort", "9"])

    assert invalid.exit_code == 2
    assert WebPConfigStore(repository).load().effort == 5
