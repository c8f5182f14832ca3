"""
opencode-runner - Serve opencode over HTTPS and keep it running.

Launches an opencode server on loopback behind a Caddy TLS proxy with a
self-signed certificate, stores the access password, and supervises both
processes with a detached watchdog until an explicit stop.
"""

__version__ = "0.1.0"
