"""
Self-signed TLS certificate for the HTTPS proxy.

The key/cert pair is generated with ``openssl`` the first time it is needed
and reused afterwards. The subject alternative names cover loopback, the
host name and the detected network address.
"""

import logging
import socket
import subprocess
from pathlib import Path

from .config import Config
from .errors import ProvisioningError

logger = logging.getLogger(__name__)

CERT_DAYS = 365
COMMON_NAME = "opencode-server"


def subject_alt_names(service_host: str) -> str:
    """Build the subjectAltName extension value."""
    names = ["DNS:localhost", "IP:127.0.0.1"]

    hostname = socket.gethostname()
    if hostname and hostname != "localhost":
        names.append(f"DNS:{hostname}")

    if service_host and service_host != "127.0.0.1":
        try:
            socket.inet_aton(service_host)
            names.append(f"IP:{service_host}")
        except OSError:
            names.append(f"DNS:{service_host}")

    return ",".join(names)


def ensure_certificate(config: Config) -> tuple[Path, Path]:
    """
    Make sure a key/cert pair exists, generating it if needed.

    Returns:
        Tuple of (cert_file, key_file)
    """
    cert_file, key_file = config.cert_file, config.key_file
    if cert_file.exists() and key_file.exists():
        return cert_file, key_file

    cert_file.parent.mkdir(parents=True, exist_ok=True)
    key_file.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        config.openssl_bin, "req", "-x509",
        "-newkey", "rsa:4096",
        "-sha256",
        "-days", str(CERT_DAYS),
        "-nodes",
        "-keyout", str(key_file),
        "-out", str(cert_file),
        "-subj", f"/CN={COMMON_NAME}",
        "-addext", f"subjectAltName={subject_alt_names(config.get_service_host())}",
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=120)
    except FileNotFoundError:
        raise ProvisioningError(
            f"'{config.openssl_bin}' not found; install OpenSSL to generate the TLS certificate"
        )
    except subprocess.TimeoutExpired:
        raise ProvisioningError("Certificate generation timed out")

    if result.returncode != 0:
        raise ProvisioningError(f"Certificate generation failed: {result.stderr.strip()}")

    key_file.chmod(0o600)
    logger.info(f"Generated new self-signed certificate in {cert_file.parent}")
    return cert_file, key_file
