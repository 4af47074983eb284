"""Unit tests for client configuration."""

import pytest

from jand_ipc.config import DEFAULT_TIMEOUT, ClientConfig, CorrelationMode


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("JAND_PIPE_NAME", "JAND_IPC_TIMEOUT", "JAND_IPC_EVENTS", "JAND_IPC_CORRELATION"):
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = ClientConfig()

        assert config.name == "jand"
        assert config.timeout == DEFAULT_TIMEOUT
        assert config.events is True
        assert config.correlation == CorrelationMode.FIFO

    def test_from_env_without_variables(self):
        assert ClientConfig.from_env() == ClientConfig()


class TestFromEnv:
    """Test environment variable handling."""

    def test_reads_variables(self, monkeypatch):
        monkeypatch.setenv("JAND_PIPE_NAME", "/run/jand.sock")
        monkeypatch.setenv("JAND_IPC_TIMEOUT", "2.5")
        monkeypatch.setenv("JAND_IPC_EVENTS", "no")
        monkeypatch.setenv("JAND_IPC_CORRELATION", "MATCH")

        config = ClientConfig.from_env()

        assert config.name == "/run/jand.sock"
        assert config.timeout == 2.5
        assert config.events is False
        assert config.correlation == CorrelationMode.MATCH

    @pytest.mark.parametrize("value", ["0", "none", "off"])
    def test_timeout_can_be_disabled(self, monkeypatch, value):
        monkeypatch.setenv("JAND_IPC_TIMEOUT", value)

        assert ClientConfig.from_env().timeout is None

    def test_invalid_timeout_falls_back(self, monkeypatch):
        monkeypatch.setenv("JAND_IPC_TIMEOUT", "soon")

        assert ClientConfig.from_env().timeout == DEFAULT_TIMEOUT

    def test_unknown_correlation_ignored(self, monkeypatch):
        monkeypatch.setenv("JAND_IPC_CORRELATION", "psychic")

        assert ClientConfig.from_env().correlation == CorrelationMode.FIFO

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("JAND_PIPE_NAME", "from-env")

        config = ClientConfig.from_env(name="explicit", timeout=None, events=False)

        assert config.name == "explicit"
        assert config.timeout == DEFAULT_TIMEOUT
        assert config.events is False

    def test_unknown_override_rejected(self):
        with pytest.raises(TypeError, match="colour"):
            ClientConfig.from_env(colour="blue")
