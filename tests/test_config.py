"""
Tests for environment configuration.
"""
import os
from unittest.mock import patch

from config import DEFAULT_APP_ID, AppConfig
from symbols import SUPPORTED_SYMBOLS


def load(env: dict, tmp_path) -> AppConfig:
    # an empty .env keeps a developer's local file out of the test
    dotenv = tmp_path / ".env"
    dotenv.write_text("")
    with patch.dict(os.environ, env, clear=True):
        return AppConfig.from_env(str(dotenv))


class TestAppConfig:
    def test_defaults(self, tmp_path):
        config = load({}, tmp_path)
        assert config.app_id == DEFAULT_APP_ID
        assert config.port == 8000
        assert config.analysis_interval == 1.0
        assert config.currency == "USD"
        assert config.symbols == list(SUPPORTED_SYMBOLS)
        assert config.telegram_chat_id is None
        assert config.ws_url.endswith("app_id=1089")

    def test_values_from_environment(self, tmp_path):
        config = load({
            "DERIV_APP_ID": "4242",
            "DERIV_TOKEN": " secret ",
            "TELEGRAM_CHAT_ID": "12345",
            "PORT": "9000",
            "ANALYSIS_INTERVAL": "0.5",
            "SYMBOLS": "R_100, 1HZ100V,,",
            "LOG_LEVEL": "debug",
        }, tmp_path)

        assert config.app_id == "4242"
        assert config.deriv_token == "secret"
        assert config.telegram_chat_id == 12345
        assert config.port == 9000
        assert config.analysis_interval == 0.5
        assert config.symbols == ["R_100", "1HZ100V"]
        assert config.log_level == "DEBUG"

    def test_invalid_numbers_fall_back(self, tmp_path):
        config = load({"PORT": "http", "ANALYSIS_INTERVAL": "-1"}, tmp_path)
        assert config.port == 8000
        assert config.analysis_interval == 1.0
