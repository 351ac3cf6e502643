"""
Tests for the operational CLI.

Service commands run against the test database and the ProviderStub by
patching the CLI's service factory.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs

import pytest
from sqlmodel import Session

from oauth_core import cli
from oauth_core.crud.integration import create_or_update_integration, get_user_integration

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"


@pytest.fixture(name="cli_service")
def cli_service_fixture(monkeypatch, token_service):
    monkeypatch.setattr(cli, "_build_service", lambda: token_service)
    return token_service


def _connect(session: Session, provider: str = "google", minutes_left: float = 60):
    integration = create_or_update_integration(
        session=session,
        user_id="alice",
        service_name=provider,
        access_token=f"{provider}-access-token",
        refresh_token=f"{provider}-refresh-token",
        expires_in=3600,
        scopes="calendar.readonly",
    )
    integration.expires_at = datetime.now(timezone.utc) + timedelta(minutes=minutes_left)
    session.add(integration)
    session.commit()
    return integration


class TestEnvFile:
    def test_write_preserves_comments_and_order(self, tmp_path: Path):
        env_path = tmp_path / ".env"
        env_path.write_text("# OAuth apps\nGITHUB_CLIENT_ID=old\n\nPORT=8000\n")

        cli.write_env_file(env_path, {"GITHUB_CLIENT_ID": "new", "SLACK_CLIENT_ID": "slack"})

        assert env_path.read_text() == (
            "# OAuth apps\nGITHUB_CLIENT_ID=new\n\nPORT=8000\nSLACK_CLIENT_ID=slack\n"
        )
        assert (tmp_path / ".env.bak").read_text().startswith("# OAuth apps\nGITHUB_CLIENT_ID=old")
        assert not (tmp_path / ".env.tmp").exists()

    def test_get_env_map_handles_quotes_and_export(self, tmp_path: Path):
        env_path = tmp_path / ".env"
        env_path.write_text('export A="quoted"\nB=\'single\'\n# C=comment\nD=plain\n')

        assert cli.get_env_map(env_path) == {"A": "quoted", "B": "single", "D": "plain"}


class TestValidateCommand:
    def test_valid_file(self, tmp_path: Path, capsys):
        env_path = tmp_path / ".env"
        env_path.write_text(
            "TOKEN_ENCRYPTION_KEY=key\nGITHUB_CLIENT_ID=abc123\nGITHUB_CLIENT_SECRET=s3cret\n"
        )

        assert cli.main(["validate", "--env-file", str(env_path)]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "/api/v1/integrations/oauth/callback" in out
        assert "s3cret" not in out

    def test_missing_encryption_key(self, tmp_path: Path):
        env_path = tmp_path / ".env"
        env_path.write_text("GITHUB_CLIENT_ID=abc\nGITHUB_CLIENT_SECRET=def\n")

        assert cli.main(["validate", "--env-file", str(env_path)]) == cli.EXIT_FAILURE

    def test_half_configured_provider(self, tmp_path: Path, capsys):
        env_path = tmp_path / ".env"
        env_path.write_text("TOKEN_ENCRYPTION_KEY=key\nSLACK_CLIENT_ID=abc\n")

        assert cli.main(["validate", "--env-file", str(env_path)]) == cli.EXIT_FAILURE
        assert "SLACK_CLIENT_SECRET" in capsys.readouterr().err

    def test_missing_file(self, tmp_path: Path):
        assert cli.main(["validate", "--env-file", str(tmp_path / "none")]) == cli.EXIT_FAILURE


class TestSetupCommand:
    def test_setup_single_provider(self, tmp_path: Path, monkeypatch):
        env_path = tmp_path / ".env"
        env_path.write_text("# local settings\nPORT=8000\n")
        monkeypatch.setattr("builtins.input", lambda prompt: "my-client-id")
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "my-client-secret")

        assert cli.main(["setup", "--provider", "jira", "--env-file", str(env_path)]) == 0

        env_map = cli.get_env_map(env_path)
        assert env_map["ATLASSIAN_CLIENT_ID"] == "my-client-id"
        assert env_map["ATLASSIAN_CLIENT_SECRET"] == "my-client-secret"
        assert env_map["TOKEN_ENCRYPTION_KEY"]
        assert env_path.read_text().startswith("# local settings\nPORT=8000\n")

    def test_setup_keeps_existing_key(self, tmp_path: Path, monkeypatch):
        env_path = tmp_path / ".env"
        env_path.write_text("TOKEN_ENCRYPTION_KEY=existing\n")
        monkeypatch.setattr("builtins.input", lambda prompt: "")

        assert cli.main(["setup", "--provider", "github", "--env-file", str(env_path)]) == 0
        assert cli.get_env_map(env_path) == {"TOKEN_ENCRYPTION_KEY": "existing"}

    def test_setup_unknown_provider(self, tmp_path: Path):
        env_path = tmp_path / ".env"

        assert cli.main(["setup", "--provider", "myspace", "--env-file", str(env_path)]) == 2
        assert not env_path.exists()


class TestServiceCommands:
    def test_status_json(self, session: Session, cli_service, capsys):
        _connect(session)

        assert cli.main(["status", "--json"]) == 0

        rows = json.loads(capsys.readouterr().out)
        assert rows[0]["user_id"] == "alice"
        assert rows[0]["provider"] == "google"
        assert "google-access-token" not in json.dumps(rows)

    def test_status_table(self, session: Session, cli_service, capsys):
        _connect(session)

        assert cli.main(["status", "--user", "alice"]) == 0

        out = capsys.readouterr().out
        assert "PROVIDER" in out
        assert "google" in out

    def test_inspect(self, session: Session, cli_service, capsys):
        _connect(session)

        assert cli.main(["inspect", "google", "--user", "alice", "--json"]) == 0

        info = json.loads(capsys.readouterr().out)
        assert info["has_refresh_token"] is True
        assert info["needs_refresh"] is False

    def test_inspect_missing_integration(self, cli_service):
        assert cli.main(["inspect", "google", "--user", "alice"]) == cli.EXIT_FAILURE

    def test_refresh(self, session: Session, cli_service, provider, capsys):
        _connect(session)
        provider.queue(GOOGLE_TOKEN_URL, 200, {"access_token": "ya29.refreshed", "expires_in": 3600})

        assert cli.main(["refresh", "google", "--user", "alice"]) == 0

        out = capsys.readouterr().out
        assert "ya29.ref" in out
        assert "ya29.refreshed" not in out

    def test_refresh_unknown_provider(self, cli_service):
        assert cli.main(["refresh", "myspace", "--user", "alice"]) == cli.EXIT_USAGE

    def test_validate_all(self, session: Session, cli_service, provider):
        _connect(session, "google")
        _connect(session, "slack", minutes_left=-5)
        provider.queue(
            "https://slack.com/api/oauth.v2.access", 200, {"ok": False, "error": "invalid_refresh_token"}
        )

        assert cli.main(["validate-all", "--user", "alice"]) == cli.EXIT_FAILURE

    def test_validate_all_healthy(self, session: Session, cli_service, capsys):
        _connect(session, "google")

        assert cli.main(["validate-all", "--user", "alice", "--json"]) == 0
        assert json.loads(capsys.readouterr().out) == [
            {"provider": "google", "status": "valid", "message": None}
        ]

    def test_disconnect(self, session: Session, cli_service, provider):
        _connect(session)
        provider.queue(GOOGLE_REVOKE_URL, 200)

        assert cli.main(["disconnect", "google", "--user", "alice"]) == 0
        assert get_user_integration(session=session, user_id="alice", service_name="google") is None

    def test_simulate_failure(self, session: Session, cli_service, provider, capsys):
        """The provider rejects the bogus refresh token and the original is restored."""
        integration = _connect(session)
        original = integration.refresh_token_encrypted
        provider.queue(GOOGLE_TOKEN_URL, 400, {"error": "invalid_grant"})

        assert cli.main(["simulate-failure", "google", "--user", "alice"]) == 0

        sent = parse_qs(provider.calls_to(GOOGLE_TOKEN_URL)[0].content.decode())
        assert sent["refresh_token"] == [cli.SIMULATED_REFRESH_TOKEN]
        restored = get_user_integration(session=session, user_id="alice", service_name="google")
        assert restored.refresh_token_encrypted == original
        assert "Reauthorization correctly reported" in capsys.readouterr().out

    def test_simulate_failure_unexpected_success(self, session: Session, cli_service, provider):
        integration = _connect(session)
        original = integration.refresh_token_encrypted
        provider.queue(GOOGLE_TOKEN_URL, 200, {"access_token": "ya29.accepted"})

        assert cli.main(["simulate-failure", "google", "--user", "alice"]) == cli.EXIT_FAILURE
        restored = get_user_integration(session=session, user_id="alice", service_name="google")
        assert restored.refresh_token_encrypted == original


class TestBuildService:
    def test_creates_local_tables_first(self, monkeypatch):
        calls = []
        monkeypatch.setattr("oauth_core.core.db.init_db", lambda: calls.append("init_db"))
        monkeypatch.setattr(
            cli.TokenService, "from_settings", lambda app_settings: calls.append("service")
        )

        cli._build_service()

        assert calls == ["init_db", "service"]


class TestUsage:
    def test_missing_command(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 2

    def test_missing_user(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["refresh", "google"])
        assert exc_info.value.code == 2
