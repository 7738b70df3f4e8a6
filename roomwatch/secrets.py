"""Secret file loaders: SOPS-encrypted or plain .env."""

import logging
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

from roomwatch.errors import ConfigError

logger = logging.getLogger(__name__)


def load_secrets(encrypted_path: str | Path) -> dict[str, str | None]:
    """Decrypt a SOPS-encrypted .env file and return its key-value pairs.

    Args:
        encrypted_path: Path to the encrypted .env.enc file.

    Returns:
        Dictionary of decrypted key-value pairs.

    Raises:
        ConfigError: If the file does not exist or SOPS cannot decrypt it.
    """
    path = Path(encrypted_path)
    if not path.exists():
        raise ConfigError(f"Encrypted secrets file not found: {path}")

    try:
        result = subprocess.run(
            ["sops", "--decrypt", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ConfigError(f"SOPS could not decrypt {path}: {exc}") from exc
    return dict(dotenv_values(stream=StringIO(result.stdout)))


def load_dotenv_fallback(dotenv_path: str | Path) -> dict[str, str | None]:
    """Load a plain .env file directly.

    A missing file is not an error here: values may come entirely from the
    process environment. Returns an empty dict in that case.
    """
    path = Path(dotenv_path)
    if not path.exists():
        logger.debug("Dotenv file not found at %s, using environment only", path)
        return {}

    return dict(dotenv_values(path))
