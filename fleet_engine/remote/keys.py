# fleet_engine/remote/keys.py
"""Operator SSH key used to reach provisioned workers."""

import logging
import subprocess
from pathlib import Path

from fleet_engine.core.errors import MissingPrerequisite

logger = logging.getLogger(__name__)


def ensure_ssh_key(private_key: Path, timeout: int = 60) -> str:
    """
    Return the public key, generating an RSA-4096 pair if none exists.

    Raises:
        MissingPrerequisite: if ssh-keygen is unavailable or fails
    """
    private_key = Path(private_key).expanduser()
    public_key = private_key.with_name(private_key.name + ".pub")

    if public_key.exists():
        logger.info(f"ℹ️  SSH key already exists: {public_key}")
        return public_key.read_text(encoding="utf-8").strip()

    private_key.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    try:
        subprocess.run(
            ["ssh-keygen", "-t", "rsa", "-b", "4096", "-f", str(private_key), "-N", "", "-q"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise MissingPrerequisite(f"Cannot generate SSH key at {private_key}: {e}") from e

    logger.info(f"✅ SSH key generated: {public_key}")
    return public_key.read_text(encoding="utf-8").strip()
