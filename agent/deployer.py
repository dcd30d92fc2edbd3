"""
Write a certificate bundle into its deploy directory.

The deploy path and file names come from the server, so both are validated
before anything touches the disk:

  path       absolute, no "..", not under a system directory, and inside one
             of the allowed base paths
  file name  plain name (no separators), not hidden, at most 255 characters,
             extension one of .pem .crt .key .cer .chain

Files are written atomically: the private key with mode 0600, certificates
with 0644, inside a directory created with 0750.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

from agent.errors import DeployError
from storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_PATHS = [
    "/etc/ssl",
    "/etc/nginx/ssl",
    "/etc/nginx/certs",
    "/etc/apache2/ssl",
    "/etc/httpd/ssl",
    "/etc/letsencrypt",
    "/var/lib/letsync",
    "/opt/certs",
    "/home",
    "/root/certs",
]

FORBIDDEN_PATHS = [
    "/etc/passwd",
    "/etc/shadow",
    "/etc/sudoers",
    "/etc/crontab",
    "/etc/cron.d",
    "/etc/init.d",
    "/etc/systemd",
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/root/.ssh",
    "/var/spool/cron",
]

ALLOWED_EXTENSIONS = (".pem", ".crt", ".key", ".cer", ".chain")

KEY_MODE = 0o600
CERT_MODE = 0o644
DIR_MODE = 0o750


def _is_under(path: str, base: str) -> bool:
    base = base.rstrip("/") or "/"
    return path == base or path.startswith(base + "/") or base == "/"


class Deployer:
    def __init__(self, allowed_paths: Optional[Iterable[str]] = None) -> None:
        self.allowed_paths: List[str] = list(DEFAULT_ALLOWED_PATHS if allowed_paths is None else allowed_paths)

    def validate_path(self, deploy_path: str) -> str:
        """Return the normalised path or raise DeployError."""
        if not deploy_path:
            raise DeployError("deploy path is empty")
        if ".." in deploy_path:
            raise DeployError(f"deploy path must not contain '..': {deploy_path}")
        if not os.path.isabs(deploy_path):
            raise DeployError(f"deploy path must be absolute: {deploy_path}")
        clean = os.path.normpath(deploy_path)
        for forbidden in FORBIDDEN_PATHS:
            if _is_under(clean, forbidden):
                raise DeployError(f"deploy path is inside a protected system directory: {deploy_path}")
        if self.allowed_paths and not any(_is_under(clean, base) for base in self.allowed_paths):
            raise DeployError(f"deploy path is outside the allowed directories: {deploy_path}")
        return clean

    @staticmethod
    def validate_filename(filename: str) -> None:
        if not filename or filename in (".", ".."):
            raise DeployError(f"invalid file name: {filename!r}")
        if "/" in filename or "\\" in filename:
            raise DeployError(f"file name must not contain path separators: {filename}")
        if filename.startswith("."):
            raise DeployError(f"hidden file names are not allowed: {filename}")
        if len(filename) > 255:
            raise DeployError(f"file name too long: {filename[:32]}...")
        if not filename.lower().endswith(ALLOWED_EXTENSIONS):
            raise DeployError(f"file extension not allowed: {filename}")

    def deploy(self, cert: dict, bundle: dict) -> List[Path]:
        """
        Write *bundle* (cert_pem/key_pem/fullchain_pem) as described by the
        config entry *cert* (deploy_path, file_mapping).  Returns written paths.
        """
        directory = Path(self.validate_path(cert.get("deploy_path", "")))
        mapping = cert.get("file_mapping") or {}
        cert_name = mapping.get("cert") or "cert.pem"
        key_name = mapping.get("key") or "key.pem"
        chain_name = mapping.get("fullchain") or "fullchain.pem"
        for name in (cert_name, key_name, chain_name):
            self.validate_filename(name)

        files = [
            (cert_name, bundle.get("cert_pem", ""), CERT_MODE),
            (key_name, bundle.get("key_pem", ""), KEY_MODE),
            (chain_name, bundle.get("fullchain_pem", ""), CERT_MODE),
        ]
        if not any(content for _, content, _ in files):
            raise DeployError(f"certificate {cert.get('id')} bundle is empty")

        written = []
        try:
            if not directory.exists():
                directory.mkdir(mode=DIR_MODE, parents=True)
            for name, content, mode in files:
                if not content:
                    continue
                target = directory / name
                atomic_write_text(target, content, mode=mode)
                written.append(target)
        except OSError as exc:
            raise DeployError(f"writing certificate files to {directory} failed: {exc}") from exc

        logger.info("Deployed %s to %s (%d file(s))", cert.get("domain", cert.get("id")), directory, len(written))
        return written
