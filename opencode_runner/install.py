"""
Provisioning of external binaries and provider authentication.

The runner depends on ``opencode`` (the application server), ``caddy`` (the
HTTPS reverse proxy) and ``openssl``. Missing binaries are installed with the
first installer that succeeds; if none does, a ProvisioningError tells the
user how to fix it.
"""

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

from .config import Config
from .errors import AuthenticationError, ProvisioningError

logger = logging.getLogger(__name__)

OPENCODE_HOME_BIN = Path.home() / ".opencode" / "bin"

INSTALLERS = {
    "opencode": [
        ["bash", "-c", "curl -fsSL https://opencode.ai/install | bash"],
    ],
    "caddy": [
        ["brew", "install", "caddy"],
        ["sudo", "apt-get", "install", "-y", "caddy"],
    ],
    "openssl": [
        ["brew", "install", "openssl"],
        ["sudo", "apt-get", "install", "-y", "openssl"],
    ],
}

REMEDIATION = {
    "opencode": "Install it with: curl -fsSL https://opencode.ai/install | bash",
    "caddy": "Install it from https://caddyserver.com/docs/install",
    "openssl": "Install OpenSSL with your system package manager",
}


def find_binary(name: str) -> str | None:
    """Locate an executable on PATH or in the opencode install directory."""
    if os.path.isabs(name):
        return name if os.access(name, os.X_OK) else None

    found = shutil.which(name)
    if found:
        return found

    candidate = OPENCODE_HOME_BIN / name
    if candidate.exists() and os.access(candidate, os.X_OK):
        return str(candidate)
    return None


def ensure_binary(name: str, binary: str = None) -> str:
    """
    Return the path of a required binary, installing it if missing.

    Args:
        name: Logical dependency name (key of INSTALLERS)
        binary: Configured executable, defaults to ``name``
    """
    binary = binary or name
    found = find_binary(binary)
    if found:
        return found

    for cmd in INSTALLERS.get(name, []):
        logger.info(f"{name} not found, trying: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=600)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Installer for {name} unavailable: {e}")
            continue

        if result.returncode != 0:
            logger.warning(f"Installer for {name} failed: {result.stderr.strip()}")
            continue

        found = find_binary(binary)
        if found:
            logger.info(f"Installed {name} at {found}")
            return found

    raise ProvisioningError(
        f"Required dependency '{name}' is not installed. {REMEDIATION.get(name, '')}".strip()
    )


def ensure_dependencies(config: Config) -> dict[str, str]:
    """Resolve all external binaries, returning name -> path."""
    return {
        "opencode": ensure_binary("opencode", config.opencode_bin),
        "caddy": ensure_binary("caddy", config.caddy_bin),
        "openssl": ensure_binary("openssl", config.openssl_bin),
    }


def ensure_authenticated(opencode_bin: str):
    """Make sure opencode has at least one provider configured."""
    try:
        result = subprocess.run(
            [opencode_bin, "auth", "list"],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise AuthenticationError(f"Could not query opencode credentials: {e}")

    if result.returncode == 0 and not re.search(r"\b0 credentials\b", result.stdout):
        return

    logger.info("No opencode provider configured, starting login")
    # Interactive: inherits the terminal
    login = subprocess.run([opencode_bin, "auth", "login"])
    if login.returncode != 0:
        raise AuthenticationError(
            "opencode authentication failed. Run 'opencode auth login' and try again, "
            "or pass --skip-auth"
        )
