"""
Persistent server password.

The password is generated once and stored as a single line; later sessions
reuse it for as long as the file exists.
"""

import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def read_password(path: Path) -> str | None:
    """Read the stored password, or None if it has not been created."""
    try:
        value = Path(path).read_text().strip()
    except FileNotFoundError:
        return None
    return value or None


def ensure_password(path: Path) -> str:
    """Return the stored password, generating and persisting it if absent."""
    existing = read_password(path)
    if existing:
        return existing

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    password = str(uuid.uuid4())

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(password + "\n")

    logger.info(f"Generated new server password in {path}")
    return password
