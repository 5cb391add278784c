import pytest

from dembot.config import load_config


def write_config(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_config_defaults(tmp_path):
    config = load_config(write_config(tmp_path, "token: abc\n"))
    assert config.token == "abc"
    assert config.log_level == "INFO"
    assert config.dashboard_port == 3000
    assert config.error_log_size == 100
    assert config.runtime_sample_size == 1440
    assert config.state_rollup_dedupe is False
    assert config.bypass_user_ids == []


def test_load_config_reads_values(tmp_path):
    path = write_config(
        tmp_path,
        "\n".join(
            [
                "token: abc",
                "log_level: debug",
                "guild_id: '123'",
                "dashboard_port: 8080",
                "manager_role_id: 55",
                "bypass_user_ids: [1, '2']",
                "html_refresh_seconds: 0",
                "state_rollup_dedupe: true",
            ]
        ),
    )
    config = load_config(path)
    assert config.log_level == "DEBUG"
    assert config.guild_id == 123
    assert config.dashboard_port == 8080
    assert config.manager_role_id == 55
    assert config.bypass_user_ids == [1, 2]
    assert config.html_refresh_seconds == 0
    assert config.state_rollup_dedupe is True


def test_load_config_uses_env_path(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG_PATH", write_config(tmp_path, "token: from-env\n"))
    assert load_config().token == "from-env"


@pytest.mark.parametrize(
    "text, message",
    [
        ("log_level: INFO\n", "token"),
        ("token: abc\nlog_level: LOUD\n", "log_level"),
        ("token: abc\ndashboard_port: 70000\n", "dashboard_port"),
        ("token: abc\nerror_log_size: 0\n", "error_log_size"),
        ("token: abc\nguild_id: nope\n", "guild_id"),
        ("token: abc\nbypass_user_ids: [x]\n", "bypass"),
    ],
)
def test_load_config_rejects_invalid(tmp_path, text, message):
    with pytest.raises(ValueError, match=message):
        load_config(write_config(tmp_path, text))
