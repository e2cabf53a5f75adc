import pytest

from tokenrelay.cmd.server import load_config
from tokenrelay.core.settings import RelaySettings


def test_load_config_from_yaml(tmp_path, monkeypatch):
    monkeypatch.delenv("TOKENRELAY_LISTEN", raising=False)
    path = tmp_path / "relay.yaml"
    path.write_text("listen: '127.0.0.1:5000'\nmax_public_hosts: 5\n")

    settings = RelaySettings.from_mapping(load_config(path))

    assert settings.listen_address == ("127.0.0.1", 5000)
    assert settings.max_public_hosts == 5
    assert settings.channel_max_entries == 100


def test_listen_override_wins(tmp_path, monkeypatch):
    monkeypatch.setenv("TOKENRELAY_LISTEN", "0.0.0.0:7000")
    path = tmp_path / "relay.yaml"
    path.write_text("listen: '127.0.0.1:5000'\n")

    assert load_config(path)["listen"] == "0.0.0.0:7000"
    assert load_config(path, "10.0.0.1:9000")["listen"] == "10.0.0.1:9000"


def test_empty_config_uses_defaults(monkeypatch):
    monkeypatch.delenv("TOKENRELAY_LISTEN", raising=False)
    settings = RelaySettings.from_mapping(load_config(None))
    assert settings.listen == "0.0.0.0:4001"
    assert settings.token_expiry_ms == 600_000
    assert settings.channel_ttl_ms == 1_200_000


@pytest.mark.parametrize("bad", [{"listen": "nowhere"}, {"max_public_hosts": 0}, {"unknown_key": 1}])
def test_invalid_settings_rejected(bad):
    with pytest.raises(ValueError):
        RelaySettings.from_mapping(bad)


def test_default_frame_limit_is_100_mib():
    assert RelaySettings().max_message_bytes == 100 * 1024 * 1024
