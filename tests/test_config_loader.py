from ambuwatch.config import Config, load_layered_config, load_package_config


def test_environment_override(monkeypatch):
    monkeypatch.setenv("AMBUWATCH_BACKEND_URL", "http://ops.test/api/v1/")
    monkeypatch.setenv("AMBUWATCH_VENDOR_TIMEOUT", "4.5")

    data, sources = load_layered_config()

    assert data["backend"]["base_url"] == "http://ops.test/api/v1/"
    assert "env:AMBUWATCH_*" in sources

    settings = Config.load().settings()
    assert settings.backend.base_url == "http://ops.test/api/v1"
    assert settings.stream.vendor_timeout == 4.5


def test_invalid_environment_values_are_skipped(monkeypatch):
    monkeypatch.setenv("AMBUWATCH_LOG_LEVEL", "chatty")
    monkeypatch.setenv("AMBUWATCH_BACKEND_TIMEOUT", "soon")

    data, _ = load_layered_config()

    assert data["backend"]["timeout"] == 15.0
    assert data["logging"]["level"] == "INFO"


def test_package_defaults():
    settings = load_package_config().settings()

    assert settings.uploads.max_bytes == 10 * 1024 * 1024
    assert settings.stream.max_channels == 4
    assert settings.stream.player_language == "en"


def test_explicit_file_overlays_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("backend:\n  token: abc\nuploads:\n  max_bytes: 1024\n", encoding="utf-8")

    settings = Config.load(path).settings()

    assert settings.backend.token == "abc"
    assert settings.backend.timeout == 15.0
    assert settings.uploads.max_bytes == 1024
    assert Config.load(tmp_path / "missing.yaml").settings().uploads.max_bytes == 10 * 1024 * 1024
