"""Tests for the entry point, simulate command and application wiring."""

import json
from unittest.mock import MagicMock, patch

import pytest

from ticket_notifier.config import Config
from ticket_notifier.main import Application, _parse_args, main, simulate
from ticket_notifier.models import AuthMode, AutoReplyRule


def make_config(tmp_path=None, **overrides) -> Config:
    """Create a Config with defaults, overriding specific fields."""
    config = Config(discord_token="user-token", guild_id="G1")
    if tmp_path is not None:
        config.state_path = str(tmp_path / "state.json")
        config.archive_path = str(tmp_path / "archive.sqlite3")
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


# ── Argument parsing ──────────────────────────────────────────────


class TestParseArgs:
    def test_defaults(self):
        args = _parse_args([])
        assert args.config is None
        assert args.log_level == "INFO"
        assert args.command == "run"

    def test_config_flag(self):
        args = _parse_args(["--config", "/tmp/my.yaml"])
        assert args.config == "/tmp/my.yaml"

    def test_log_level_flag(self):
        args = _parse_args(["--log-level", "DEBUG"])
        assert args.log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            _parse_args(["--log-level", "TRACE"])

    def test_simulate_command(self):
        args = _parse_args(["simulate", "--content", "привет", "--channel-id", "C1"])
        assert args.command == "simulate"
        assert args.content == "привет"
        assert args.channel_id == "C1"
        assert args.guild_id == ""

    def test_simulate_requires_content(self):
        with pytest.raises(SystemExit):
            _parse_args(["simulate"])


# ── simulate ──────────────────────────────────────────────────────


class TestSimulate:
    def test_matching_rule(self):
        config = make_config(auto_replies=[
            AutoReplyRule(id="greet", name="Greeting", include_any=["привет"], response="Здравствуйте!"),
        ])

        result = simulate(config, "Привет!")

        assert result["action"] == "send"
        assert result["ruleId"] == "greet"
        assert result["response"] == "Здравствуйте!"

    def test_no_rules(self):
        result = simulate(make_config(), "привет")
        assert result["action"] == "none"
        assert result["reason"] == "no_rule_matched"


# ── main() ────────────────────────────────────────────────────────


class TestMain:
    @patch("ticket_notifier.main.load_config")
    def test_main_exits_on_missing_config(self, mock_load_config):
        mock_load_config.side_effect = FileNotFoundError("/no/such/file")
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", "/no/such/file"])
        assert exc_info.value.code == 1

    @patch("ticket_notifier.main.load_config")
    def test_main_exits_on_invalid_config(self, mock_load_config):
        mock_load_config.side_effect = ValueError("bad delay")
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", "/dev/null"])
        assert exc_info.value.code == 1

    @patch("ticket_notifier.main.load_config")
    def test_main_exits_without_token(self, mock_load_config):
        mock_load_config.return_value = make_config(discord_token="")
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", "/dev/null"])
        assert exc_info.value.code == 1

    @patch("ticket_notifier.main.load_config")
    def test_simulate_prints_decision(self, mock_load_config, capsys):
        mock_load_config.return_value = make_config(discord_token="")

        main(["--config", "/dev/null", "simulate", "--content", "проверка анидеск, модер не отвечает, что делать?"])

        output = json.loads(capsys.readouterr().out)
        assert output["action"] == "send"
        assert output["ruleId"] == "moderation_check"

    @patch("ticket_notifier.main.asyncio.run")
    @patch("ticket_notifier.main._run", new_callable=MagicMock)
    @patch("ticket_notifier.main.load_config")
    def test_main_runs_application(self, mock_load_config, mock_run, mock_asyncio_run):
        config = make_config()
        mock_load_config.return_value = config

        main(["--config", "/dev/null"])

        mock_load_config.assert_called_once_with("/dev/null")
        mock_run.assert_called_once_with(config)
        mock_asyncio_run.assert_called_once_with(mock_run.return_value)


# ── Application ───────────────────────────────────────────────────


class TestApplication:
    @pytest.mark.asyncio
    async def test_wiring_user_mode(self, tmp_path):
        app = Application(make_config(tmp_path))
        try:
            assert app.session.auth_mode is AuthMode.USER
            assert app.runtime.rest.bot is False
            assert app.runtime.gateway is app.gateway
        finally:
            app.archive.close()

    @pytest.mark.asyncio
    async def test_wiring_bot_mode(self, tmp_path):
        app = Application(make_config(tmp_path, discord_bot_token="bot"))
        try:
            assert app.session.auth_mode is AuthMode.BOT
            assert app.runtime.rest.bot is True
        finally:
            app.archive.close()

    @pytest.mark.asyncio
    async def test_auth_mode_change_switches_rest_client(self, tmp_path):
        app = Application(make_config(tmp_path))
        try:
            assert app.runtime.rest.auth_header == "user-token"
            app._on_auth_mode_change(AuthMode.BOT)
            assert app.runtime.rest.bot is True
            assert app.runtime.rest.auth_header == "Bot user-token"
        finally:
            app.archive.close()

    @pytest.mark.asyncio
    async def test_disconnect_resets_scan_flag(self, tmp_path):
        app = Application(make_config(tmp_path))
        try:
            app.runtime.channels_scanned = True
            app.gateway.handle_close(1006)
            assert app.runtime.channels_scanned is False
        finally:
            app.archive.close()

    @pytest.mark.asyncio
    async def test_flush_writes_dirty_state(self, tmp_path):
        app = Application(make_config(tmp_path))
        try:
            app.flush()
            assert not (tmp_path / "state.json").exists()

            app.runtime.registry.total_created = 4
            app.runtime.mark_dirty()
            app.flush()

            saved = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
            assert saved["total_created"] == 4
            assert app.runtime.registry.dirty is False
        finally:
            app.archive.close()

    @pytest.mark.asyncio
    async def test_run_cleans_up_when_gateway_exits(self, tmp_path):
        # No token: the gateway returns immediately and shutdown runs.
        app = Application(make_config(tmp_path, discord_token=""))
        app.runtime.mark_dirty()

        await app.run()

        assert (tmp_path / "state.json").exists()
