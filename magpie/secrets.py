"""Secrets loading for magpie.config.

Each scope (``internal``, ``external``) lives in ``secrets/<scope>.env`` for
development, or ``secrets/<scope>.env.enc`` encrypted with SOPS.
"""

import logging
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

EnvValues = dict[str, str | None]


def load_secrets(encrypted_path: str | Path) -> EnvValues:
    """Decrypt a SOPS-encrypted .env file.

    Raises:
        FileNotFoundError: If the encrypted file does not exist.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    path = Path(encrypted_path)
    if not path.exists():
        raise FileNotFoundError(f"Encrypted secrets file not found: {path}")

    decrypted = subprocess.run(
        ["sops", "--decrypt", str(path)],
        capture_output=True,
        text=True,
        check=True,
    ).stdout
    return dict(dotenv_values(stream=StringIO(decrypted)))


def load_dotenv_fallback(dotenv_path: str | Path, *, required: bool = False) -> EnvValues:
    """Read a plain .env file. A missing file yields {} unless *required*."""
    path = Path(dotenv_path)
    if path.exists():
        return dict(dotenv_values(path))
    if required:
        raise FileNotFoundError(f"Dotenv file not found: {path}")
    logger.debug("No dotenv file at %s, using defaults", path)
    return {}


def load_scope(secrets_dir: str | Path, scope: str, *, use_sops: bool) -> EnvValues:
    """Load one secrets scope, encrypted or plain depending on *use_sops*.

    An encrypted scope must exist; a plain one may be absent.
    """
    secrets_dir = Path(secrets_dir)
    if use_sops:
        return load_secrets(secrets_dir / f"{scope}.env.enc")
    return load_dotenv_fallback(secrets_dir / f"{scope}.env")
