"""
Caddy reverse proxy configuration.

Generates the Caddyfile that terminates TLS on the external port with the
runner's self-signed certificate and proxies to the opencode server on its
loopback port. The file is rewritten at the start of every session so it
always reflects the configured port.
"""

import logging
from pathlib import Path

import httpx

from .config import Config
from .errors import ProvisioningError

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


def generate_caddyfile(port: int, internal_port: int, cert_file: Path, key_file: Path) -> str:
    """Generate Caddyfile content for the HTTPS front of the opencode server."""
    lines = [
        "# opencode-runner HTTPS proxy",
        "# Auto-generated - do not edit manually",
        "{",
        "\tauto_https disable_redirects",
        "}",
        "",
        f":{port} {{",
        f"\ttls {cert_file} {key_file}",
        f"\treverse_proxy {LOOPBACK}:{internal_port}",
        "}",
        "",
    ]
    return "\n".join(lines)


def write_caddyfile(config: Config) -> Path:
    """Write the Caddyfile for the current configuration."""
    path = Path(config.caddyfile)
    content = generate_caddyfile(config.port, config.internal_port, config.cert_file, config.key_file)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    except OSError as e:
        raise ProvisioningError(f"Error writing Caddy config to {path}: {e}")

    logger.info(f"Wrote Caddy config to {path}")
    return path


def remove_caddyfile(config: Config) -> bool:
    """Delete the generated Caddyfile. Returns True if a file was removed."""
    try:
        Path(config.caddyfile).unlink()
    except FileNotFoundError:
        return False
    logger.info(f"Removed Caddy config {config.caddyfile}")
    return True


def probe(url: str, timeout: float = 5.0) -> int | None:
    """
    Request the proxied URL and return the HTTP status code.

    The certificate is self-signed, so verification is disabled. Returns None
    if nothing answers.
    """
    try:
        with httpx.Client(verify=False, timeout=timeout) as client:
            response = client.get(url)
            return response.status_code
    except httpx.HTTPError as e:
        logger.debug(f"Probe of {url} failed: {e}")
        return None
