import pytest
import yaml

from config import Config, Session, config, get_logger, read_user_config, set_user, write_user_config
from errors import ConfigError


def test_missing_user_config_falls_back_to_defaults(tmp_path):
    session = read_user_config(str(tmp_path / "absent.yaml"))

    assert session.db_path == config.DATABASE_PATH
    assert session.current_user_name is None
    assert session.config_path == str(tmp_path / "absent.yaml")


def test_default_path_comes_from_config(isolated_config):
    session = read_user_config()

    assert session.config_path == isolated_config.GATOR_CONFIG_PATH


def test_set_user_persists_and_reloads(tmp_path):
    path = tmp_path / "gatorconfig.yaml"
    session = Session(db_path=str(tmp_path / "gator.db"), config_path=str(path))

    set_user(session, "kahya")

    assert session.current_user_name == "kahya"
    reloaded = read_user_config(str(path))
    assert reloaded.current_user_name == "kahya"
    assert reloaded.db_path == str(tmp_path / "gator.db")


def test_write_user_config_omits_empty_user(tmp_path):
    path = tmp_path / "gatorconfig.yaml"
    write_user_config(Session(db_path="other.db", config_path=str(path)))

    assert yaml.safe_load(path.read_text()) == {'db_path': 'other.db'}


def test_json_user_config_is_accepted(tmp_path):
    path = tmp_path / "gatorconfig.json"
    path.write_text('{"db_path": "feeds.db", "current_user_name": "lane"}')

    session = read_user_config(str(path))

    assert session.db_path == "feeds.db"
    assert session.current_user_name == "lane"


def test_empty_user_config_is_defaults(tmp_path):
    path = tmp_path / "gatorconfig.yaml"
    path.write_text("")

    assert read_user_config(str(path)).current_user_name is None


@pytest.mark.parametrize("content", [
    "- just\n- a list\n",
    "db_path: [not, a, string]\n",
    "current_user_name: 42\n",
    "db_path: '   '\n",
    "db_path: [unclosed\n",
])
def test_malformed_user_config_raises(tmp_path, content):
    path = tmp_path / "gatorconfig.yaml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        read_user_config(str(path))


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT", "5")
    monkeypatch.setenv("USER_AGENT", "gator-test")
    monkeypatch.setenv("BROWSE_DEFAULT_LIMIT", "7")

    fresh = Config()

    assert fresh.HTTP_TIMEOUT == 5
    assert fresh.USER_AGENT == "gator-test"
    assert fresh.BROWSE_DEFAULT_LIMIT == 7


def test_invalid_numeric_setting_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT", "soon")

    assert Config().HTTP_TIMEOUT == 30


def test_module_loggers_share_prefix():
    assert get_logger("fetcher").name == "Gator.fetcher"
