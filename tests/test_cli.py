"""
Tests for the admin CLI.

Commands run through main() against the per-test SQLite file; output is
captured from a rich Console writing to a buffer.
"""

import argparse
import io
import re
from unittest import mock

import pytest
from rich.console import Console

from cli.main import main, positive_int


def run_cli(settings, *argv) -> str:
    """Run the CLI with ``argv`` and return what it printed."""
    buffer = io.StringIO()
    with mock.patch("sys.argv", ["allvideo", *argv]), mock.patch(
        "cli.main.load_settings", return_value=settings
    ), mock.patch("cli.main.configure_logging"), mock.patch(
        "cli.main.console", Console(file=buffer, width=300, color_system=None)
    ):
        main()
    return buffer.getvalue()


def created_id(output: str) -> str:
    match = re.search(r"ID: (\S+)", output)
    assert match, output
    return match.group(1)


class TestPositiveInt:
    """Tests for the positive_int argparse type."""

    def test_accepts_positive(self):
        assert positive_int("5") == 5

    @pytest.mark.parametrize("value", ["0", "-3"])
    def test_rejects_non_positive(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            positive_int(value)

    def test_rejects_non_integer(self):
        with pytest.raises(ValueError):
            positive_int("abc")


class TestAccountAndKeyCommands:
    """Tests for account and key management commands."""

    def test_account_create(self, settings):
        output = run_cli(settings, "account", "create", "Owner@Example.com", "--tier", "pro")

        assert "Account created." in output
        assert "owner@example.com" in output
        assert "Tier: pro" in output

    def test_key_create_prints_plaintext_once(self, settings):
        owner_id = created_id(run_cli(settings, "account", "create", "owner@example.com"))

        output = run_cli(settings, "key", "create", owner_id, "-p", "read", "write", "--rate-limit", "120")

        assert re.search(r"API Key: av_[0-9a-f]{64}", output)
        listing = run_cli(settings, "key", "list", "--owner-id", owner_id)
        assert "read,write" in listing
        assert "120" in listing

    def test_key_revoke(self, settings):
        owner_id = created_id(run_cli(settings, "account", "create", "owner@example.com"))
        key_id = re.search(r"Key ID: (\S+)", run_cli(settings, "key", "create", owner_id)).group(1)

        output = run_cli(settings, "key", "revoke", key_id)

        assert "has been revoked" in output

    def test_unknown_key_revoke_exits_with_error(self, settings):
        with pytest.raises(SystemExit) as exc_info:
            run_cli(settings, "key", "revoke", "no-such-key")

        assert exc_info.value.code == 1

    def test_unknown_tier_exits_with_error(self, settings):
        with pytest.raises(SystemExit) as exc_info:
            run_cli(settings, "account", "create", "a@example.com", "--tier", "platinum")

        assert exc_info.value.code == 1


class TestWebhookCommands:
    """Tests for webhook management commands."""

    def test_create_list_disable(self, settings):
        owner_id = created_id(run_cli(settings, "account", "create", "owner@example.com"))

        created = run_cli(settings, "webhook", "create", owner_id, "https://hooks.example.com/in", "-e", "media.ready")
        webhook_id = created_id(created)
        assert re.search(r"Secret: whsec_[A-Za-z0-9]{32}", created)

        listing = run_cli(settings, "webhook", "list", "--owner-id", owner_id)
        assert "https://hooks.example.com/in" in listing
        assert "whsec_" not in listing

        assert "disabled" in run_cli(settings, "webhook", "disable", webhook_id)
        assert "enabled" in run_cli(settings, "webhook", "enable", webhook_id)

    def test_empty_list(self, settings):
        assert "No webhooks." in run_cli(settings, "webhook", "list")


class TestQueueCommands:
    """Tests for the queue maintenance commands."""

    def test_reclaim_with_nothing_stale(self, settings):
        assert "No stale jobs." in run_cli(settings, "reclaim-stale")

    def test_health(self, settings):
        output = run_cli(settings, "health")

        assert "Worker status: healthy" in output
        assert "Pending jobs: 0" in output

    def test_init_db_is_idempotent(self, settings):
        assert "Database tables created." in run_cli(settings, "init-db")
