"""
Certbot issuer.

Obtains certificates by running ``certbot certonly`` with a DNS-01
authenticator plugin, then reads the issued key and full chain as PEM text.
"""

import os
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography import x509

from .capabilities import CapabilityError, CertificateIssuer
from .config_loader import IssuerConfig
from .context import CallContext
from .logger import get_logger

LETSENCRYPT_PRODUCTION_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

# Plugins that take credentials from the environment rather than an INI file.
ENV_CREDENTIAL_PLUGINS = {"dns-route53"}

POLL_INTERVAL = 0.5


class CertbotError(CapabilityError):
    """Raised when Certbot operations fail."""
    pass


def get_certificate_expiry(cert_pem: str) -> datetime:
    """
    Extract the expiry date from a PEM certificate (first in the chain).

    Args:
        cert_pem: PEM text

    Returns:
        Certificate expiry datetime (timezone-aware UTC)
    """
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    return cert.not_valid_after_utc


def _check_certbot_installed() -> str:
    """
    Check if Certbot is installed and return its path.

    Raises:
        CertbotError: If Certbot is not installed
    """
    certbot_path = shutil.which("certbot")
    if not certbot_path:
        raise CertbotError(
            "Certbot not found. Install with: pip install certbot"
        )
    return certbot_path


def acme_identifier(domain: str) -> str:
    """
    Map a CDN domain to the identifier requested from the CA.

    CDN wildcard domains are listed with a leading dot (".example.com").
    """
    if domain.startswith("."):
        return f"*{domain}"
    return domain


def lineage_name(identifier: str) -> str:
    """Certbot --cert-name for an identifier (no '*' allowed)."""
    return identifier.replace("*.", "wildcard.", 1)


def _write_credentials_file(plugin: str, credentials: Dict[str, str]) -> str:
    """
    Write DNS plugin credentials to a private INI file.

    Keys are prefixed with the plugin's option prefix unless already present,
    e.g. ``access_key`` -> ``dns_aliyun_access_key``.

    Returns:
        Path to the credentials file (caller removes it)
    """
    prefix = plugin.replace("-", "_") + "_"
    lines = [f"# {plugin} credentials for Certbot"]
    for key, value in credentials.items():
        option = key if key.startswith(prefix) else prefix + key
        lines.append(f"{option} = {value}")

    fd, creds_path = tempfile.mkstemp(suffix=".ini", prefix=f"{prefix}")
    try:
        os.write(fd, ("\n".join(lines) + "\n").encode())
    finally:
        os.close(fd)

    os.chmod(creds_path, 0o600)
    return creds_path


def build_certbot_command(
    certbot_path: str,
    domain: str,
    config: IssuerConfig,
    credentials_path: Optional[str] = None,
) -> List[str]:
    """
    Build the ``certbot certonly`` command line for one domain.

    Args:
        certbot_path: Certbot executable
        domain: CDN domain name
        config: Issuer configuration
        credentials_path: Optional DNS plugin credentials file

    Returns:
        Argument list
    """
    identifier = acme_identifier(domain)
    plugin = config.dns_plugin
    acme_server = LETSENCRYPT_STAGING_URL if config.staging else LETSENCRYPT_PRODUCTION_URL

    cmd = [
        certbot_path, "certonly",
        "--non-interactive",
        "--agree-tos",
        "--keep-until-expiring",
        "--server", acme_server,
        "--work-dir", config.work_dir,
        "--logs-dir", config.logs_dir,
        "--config-dir", config.config_dir,
        "--cert-name", lineage_name(identifier),
        "-d", identifier,
        "--authenticator", plugin,
        f"--{plugin}-propagation-seconds", str(config.propagation_seconds),
    ]

    if credentials_path:
        cmd.extend([f"--{plugin}-credentials", credentials_path])

    if config.email and config.email.strip():
        cmd.extend(["--email", config.email.strip()])
    else:
        cmd.append("--register-unsafely-without-email")

    cmd.extend(["--key-type", config.key_type])
    if config.key_type == "rsa":
        cmd.extend(["--rsa-key-size", str(config.rsa_key_size)])
    else:
        cmd.extend(["--elliptic-curve", config.elliptic_curve])

    return cmd


def run_command(cmd: List[str], context: CallContext, env: Optional[Dict[str, str]] = None) -> Tuple[int, str, str]:
    """
    Run a command, killing it if the context is cancelled or times out.

    Returns:
        Tuple of (returncode, stdout, stderr)

    Raises:
        CertbotError: If the command was killed
    """
    process = subprocess.Popen(
        cmd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    while True:
        try:
            stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
            return process.returncode, stdout, stderr
        except subprocess.TimeoutExpired:
            if context.cancelled or context.expired:
                process.kill()
                process.communicate()
                reason = "cancelled" if context.cancelled else "timed out"
                raise CertbotError(f"Certbot {reason}")


class CertbotIssuer(CertificateIssuer):
    """
    CertificateIssuer backed by the certbot executable.

    One lineage is kept per domain under ``config_dir/live``.
    """

    def __init__(self, config: IssuerConfig):
        if not config.dns_plugin:
            raise CertbotError("issuer.dns_plugin is not configured")
        self.config = config
        self.certbot_path = _check_certbot_installed()
        self.logger = get_logger()

        for dir_path in (config.work_dir, config.logs_dir, config.config_dir):
            Path(dir_path).mkdir(parents=True, exist_ok=True)

        env_name = "STAGING" if config.staging else "production"
        self.logger.info(f"Certbot issuer ready ({config.dns_plugin}, Let's Encrypt {env_name})")

    def _environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.config.dns_plugin in ENV_CREDENTIAL_PLUGINS:
            env.update({k.upper(): v for k, v in self.config.dns_credentials.items()})
        return env

    def obtain(self, domain: str, context: CallContext) -> Tuple[str, str]:
        """
        Obtain a certificate for ``domain``.

        Returns:
            Tuple of (key_pem, cert_pem) where cert_pem is the full chain

        Raises:
            CertbotError: If certbot fails or its output is missing
        """
        context.check()
        plugin = self.config.dns_plugin
        credentials_path = None

        try:
            if self.config.dns_credentials and plugin not in ENV_CREDENTIAL_PLUGINS:
                credentials_path = _write_credentials_file(plugin, self.config.dns_credentials)

            cmd = build_certbot_command(self.certbot_path, domain, self.config, credentials_path)
            self.logger.debug(f"Running: {' '.join(cmd)}")

            returncode, stdout, stderr = run_command(cmd, context, env=self._environment())
            if returncode != 0:
                self.logger.debug(f"Certbot stderr: {stderr}")
                raise CertbotError(f"Certbot failed: {stderr.strip() or f'exit code {returncode}'}")
            self.logger.debug(f"Certbot stdout: {stdout}")

        finally:
            if credentials_path and os.path.exists(credentials_path):
                os.unlink(credentials_path)

        live_dir = Path(self.config.config_dir) / "live" / lineage_name(acme_identifier(domain))
        key_path = live_dir / "privkey.pem"
        chain_path = live_dir / "fullchain.pem"
        if not key_path.exists() or not chain_path.exists():
            raise CertbotError(f"Certificate files not found in {live_dir}")

        key_pem = key_path.read_text()
        cert_pem = chain_path.read_text()

        try:
            expiry = get_certificate_expiry(cert_pem)
            self.logger.info(f"  [{domain}] Certificate obtained, expires {expiry:%Y-%m-%d %H:%M UTC}")
        except ValueError as e:
            raise CertbotError(f"Certbot produced an unreadable certificate: {e}")

        return key_pem, cert_pem
