"""
Tests for gemini_chat.settings: data paths, LocalStore and logging setup.
"""

import logging

import pytest

from gemini_chat.settings import (
    DEFAULT_MODEL,
    LocalStore,
    SettingsError,
    app_data_dir,
    configure_logging,
    effective_model,
    history_path,
    resolve_log_level,
)


class TestPaths:
    def test_home_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GEMINI_CHAT_HOME", str(tmp_path / "custom"))
        assert app_data_dir() == tmp_path / "custom"
        assert history_path() == tmp_path / "custom" / "chat-history.json"

    def test_xdg_data_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GEMINI_CHAT_HOME", raising=False)
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        monkeypatch.setattr("gemini_chat.settings.sys.platform", "linux")
        assert app_data_dir() == tmp_path / "gemini-chat"

    def test_macos_application_support(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GEMINI_CHAT_HOME", raising=False)
        monkeypatch.setattr("gemini_chat.settings.sys.platform", "darwin")
        monkeypatch.setattr("gemini_chat.settings.Path.home", lambda: tmp_path)
        assert app_data_dir() == tmp_path / "Library" / "Application Support" / "GeminiChat"

    @pytest.mark.parametrize("saved", [None, "", "   ", "gemini-3"])
    def test_effective_model_defaults(self, saved):
        assert effective_model(saved) == DEFAULT_MODEL

    def test_effective_model_keeps_choice(self):
        assert effective_model(" gemini-1.5-pro ") == "gemini-1.5-pro"


class TestLocalStore:
    def test_missing_values_read_as_none(self, tmp_path):
        store = LocalStore(tmp_path / "settings.json")
        assert store.read_string("gemini-api-key") is None
        store.delete_string("gemini-api-key")

    def test_save_read_delete(self, tmp_path):
        store = LocalStore(tmp_path / "settings.json")
        store.save_string("abc", "gemini-api-key")
        assert store.read_string("gemini-api-key") == "abc"

        store.delete_string("gemini-api-key")
        assert store.read_string("gemini-api-key") is None

    def test_keys_are_namespaced_by_service(self, tmp_path):
        path = tmp_path / "settings.json"
        LocalStore(path, service="GeminiChat").save_string("one", "gemini-model")
        LocalStore(path, service="Other").save_string("two", "gemini-model")

        assert LocalStore(path, service="GeminiChat").read_string("gemini-model") == "one"
        assert '"GeminiChat.gemini-model": "one"' in path.read_text(encoding="utf-8")

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2", encoding="utf-8")
        with pytest.raises(SettingsError):
            LocalStore(path).read_string("gemini-model")


class TestLogging:
    @pytest.mark.parametrize(
        ("level", "expected"),
        [("debug", logging.DEBUG), ("INFO", logging.INFO), ("15", 15), (logging.ERROR, 40)],
    )
    def test_resolve_log_level(self, level, expected):
        assert resolve_log_level(level) == expected

    def test_unknown_level_falls_back_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="gemini_chat.settings"):
            assert resolve_log_level("chatty") == logging.WARNING
        assert "Unsupported log level 'chatty'" in caplog.text

    def test_configure_logging_sets_package_level(self):
        package_logger = logging.getLogger("gemini_chat")
        previous = package_logger.level
        try:
            assert configure_logging("debug") == logging.DEBUG
            assert package_logger.level == logging.DEBUG
            handlers = len(package_logger.handlers)
            configure_logging("info")
            assert len(package_logger.handlers) == handlers
        finally:
            package_logger.setLevel(previous)
