"""Settings sources and the command-line surface."""

from typer.testing import CliRunner

from reelpipe.cli.commands import app
from reelpipe.config import Settings
from reelpipe.orchestrator.service import qa_limits
from reelpipe.services.niche_packs import NICHE_PACKS, get_niche_pack


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    settings = Settings()

    assert settings.render.width == 1080
    assert settings.render.height == 1920
    assert settings.retry.max_attempts == 3
    assert settings.render.dry_run is False
    assert settings.qa.enabled is True
    assert settings.qa.max_file_size_mb == 287.0


def test_yaml_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text(
        "render:\n  fps: 24\n  dry_run: true\nretry:\n  max_attempts: 5\n"
    )
    settings = Settings()

    assert settings.render.fps == 24
    assert settings.render.dry_run is True
    assert settings.retry.max_attempts == 5


def test_environment_overrides_yaml(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("render:\n  fps: 24\n")
    monkeypatch.setenv("REELPIPE_RENDER__FPS", "60")

    assert Settings().render.fps == 60


def test_qa_section(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("qa:\n  max_silence_sec: 3.5\n")

    assert qa_limits(Settings())["max_silence_sec"] == 3.5

    monkeypatch.setenv("REELPIPE_QA__ENABLED", "false")
    assert qa_limits(Settings()) is None


def test_niche_pack_lookup():
    assert get_niche_pack("horror").music_mood == "dark"
    assert get_niche_pack("unknown").id == "facts"
    assert get_niche_pack(None).id == "facts"
    assert all(pack.style_bible_prompt for pack in NICHE_PACKS.values())


def test_cli_lists_commands():
    result = CliRunner().invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("import-plan", "render", "status", "cancel", "artifacts", "resume", "gc"):
        assert command in result.output
