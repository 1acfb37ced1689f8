"""Tests for secrets loading (plain dotenv and SOPS)."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from magpie.secrets import load_dotenv_fallback, load_scope, load_secrets


class TestDotenvFallback:
    def test_reads_values(self, tmp_path):
        env = tmp_path / "internal.env"
        env.write_text("OLLAMA_MODEL=qwen2.5:7b\n# comment\nOWNER_EMAIL=me@example.com\n")

        values = load_dotenv_fallback(env)

        assert values["OLLAMA_MODEL"] == "qwen2.5:7b"
        assert values["OWNER_EMAIL"] == "me@example.com"

    def test_missing_file_yields_defaults(self, tmp_path):
        assert load_dotenv_fallback(tmp_path / "absent.env") == {}

    def test_missing_file_required(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_dotenv_fallback(tmp_path / "absent.env", required=True)


class TestSops:
    def test_missing_encrypted_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_secrets(tmp_path / "internal.env.enc")

    def test_decrypts_with_sops(self, tmp_path):
        enc = tmp_path / "internal.env.enc"
        enc.write_text("ENC[...]")
        completed = MagicMock(stdout="GMAIL_CLIENT_ID=abc\nMAX_RETRIES=5\n")

        with patch("magpie.secrets.subprocess.run", return_value=completed) as mock_run:
            values = load_secrets(enc)

        assert values == {"GMAIL_CLIENT_ID": "abc", "MAX_RETRIES": "5"}
        assert mock_run.call_args.args[0] == ["sops", "--decrypt", str(enc)]

    def test_sops_failure_propagates(self, tmp_path):
        enc = tmp_path / "internal.env.enc"
        enc.write_text("ENC[...]")

        with (
            patch(
                "magpie.secrets.subprocess.run",
                side_effect=subprocess.CalledProcessError(1, "sops"),
            ),
            pytest.raises(subprocess.CalledProcessError),
        ):
            load_secrets(enc)


class TestLoadScope:
    def test_plain_scope(self, tmp_path):
        (tmp_path / "internal.env").write_text("DEFAULT_USER_ID=alice\n")
        assert load_scope(tmp_path, "internal", use_sops=False) == {"DEFAULT_USER_ID": "alice"}

    def test_plain_scope_missing(self, tmp_path):
        assert load_scope(tmp_path, "external", use_sops=False) == {}

    def test_sops_scope_uses_encrypted_file(self, tmp_path):
        with patch("magpie.secrets.load_secrets", return_value={"A": "1"}) as mock_load:
            assert load_scope(tmp_path, "internal", use_sops=True) == {"A": "1"}
        mock_load.assert_called_once_with(tmp_path / "internal.env.enc")

    def test_sops_scope_missing_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_scope(tmp_path, "internal", use_sops=True)
