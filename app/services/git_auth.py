"""Git Auth — per-operation credential staging for git subprocesses.

Secrets reach git only through files created with mode 0600 and environment
variables; they never appear in argv or in the remote URL. Key and
credential-store files are removed when the operation ends.
"""

from __future__ import annotations

import atexit
import logging
import os
import shlex
import socket
import tempfile
import threading
import urllib.parse
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import paramiko
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from app.config import settings
from app.models.git_repository import GitAuthType, GitProvider, GitRepository
from app.services.common import safe_slug
from app.services.secret_vault import SecretVault, vault

logger = logging.getLogger(__name__)

HOST_KEY_TIMEOUT_SECONDS = 10.0

_DEFAULT_TOKEN_USERNAMES = {
    GitProvider.github: "x-access-token",
    GitProvider.gitlab: "oauth2",
    GitProvider.bitbucket: "x-token-auth",
    GitProvider.generic: "git",
}


def parse_ssh_remote(url: str) -> tuple[str | None, int]:
    """Host and port of an ``ssh://`` or scp-style (``git@host:path``) remote."""
    if url.startswith("ssh://"):
        parsed = urllib.parse.urlparse(url)
        return parsed.hostname, parsed.port or 22
    if "://" in url:
        return None, 22
    userhost = url.split(":", 1)[0]
    return (userhost.rsplit("@", 1)[-1] or None), 22


_STAGED_PATHS: set[Path] = set()
_STAGED_LOCK = threading.Lock()


def _write_private(directory: Path, prefix: str, suffix: str, content: str) -> Path:
    """Stage ``content`` in a fresh 0600 file; every operation gets its own path."""
    directory.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    path = Path(name)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(path, 0o600)
    except Exception:
        path.unlink(missing_ok=True)
        raise
    with _STAGED_LOCK:
        _STAGED_PATHS.add(path)
    return path


def _remove_staged(path: Path) -> None:
    with _STAGED_LOCK:
        _STAGED_PATHS.discard(path)
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove staged credential file %s", path)


def cleanup_staged_credentials() -> None:
    with _STAGED_LOCK:
        paths = list(_STAGED_PATHS)
        _STAGED_PATHS.clear()
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            pass


atexit.register(cleanup_staged_credentials)


def unlock_private_key(private_key: str, passphrase: str | None) -> str:
    """Return ``private_key`` with its passphrase removed, in OpenSSH format.

    ssh runs in batch mode, so an encrypted key is decrypted here and only the
    unencrypted copy is staged for the duration of one git operation.
    """
    if not passphrase:
        return private_key
    data = private_key.encode()
    password = passphrase.encode()
    try:
        key = serialization.load_ssh_private_key(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        try:
            key = serialization.load_pem_private_key(data, password=password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise ValueError("Private key could not be unlocked with the given passphrase") from exc
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def seed_known_hosts(host: str, port: int, known_hosts: Path, timeout: float = HOST_KEY_TIMEOUT_SECONDS) -> bool:
    """Fetch the remote's host key into a repository-scoped known_hosts file."""
    entry = host if port == 22 else f"[{host}]:{port}"
    host_keys = paramiko.HostKeys()
    if known_hosts.exists():
        host_keys.load(str(known_hosts))
        if host_keys.lookup(entry):
            return True

    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        logger.warning("Could not reach %s:%d to fetch host key: %s", host, port, exc)
        return False
    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=timeout)
        key = transport.get_remote_server_key()
    except paramiko.SSHException as exc:
        logger.warning("SSH handshake with %s:%d failed: %s", host, port, exc)
        return False
    finally:
        transport.close()

    host_keys.add(entry, key.get_name(), key)
    known_hosts.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    host_keys.save(str(known_hosts))
    os.chmod(known_hosts, 0o600)
    logger.info("Recorded %s host key for %s", key.get_name(), entry)
    return True


def ssh_command(key_path: Path, known_hosts: Path) -> str:
    return " ".join(
        [
            "ssh",
            "-i",
            shlex.quote(str(key_path)),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "BatchMode=yes",
            "-o",
            shlex.quote(f"UserKnownHostsFile={known_hosts}"),
            "-o",
            "StrictHostKeyChecking=accept-new",
        ]
    )


def credential_store_line(url: str, username: str, token: str) -> str:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError("http_token auth requires an http(s) remote URL")
    netloc = parsed.hostname if parsed.port is None else f"{parsed.hostname}:{parsed.port}"
    user = urllib.parse.quote(username, safe="")
    secret = urllib.parse.quote(token, safe="")
    return f"{parsed.scheme}://{user}:{secret}@{netloc}\n"


class GitAuth:
    def __init__(self, data_dir: str | os.PathLike | None = None, secret_vault: SecretVault | None = None):
        root = Path(data_dir or settings.data_dir)
        self.ssh_dir = root / "ssh"
        self.credentials_dir = root / "credentials"
        self.vault = secret_vault or vault

    def credentials_for(self, repo: GitRepository) -> dict[str, str]:
        if repo.auth_type == GitAuthType.none or not repo.credentials_encrypted:
            return {}
        return self.vault.open_json(repo.credentials_encrypted)

    def known_hosts_path(self, repo: GitRepository) -> Path:
        return self.ssh_dir / f"{safe_slug(repo.stack_id)}.known_hosts"

    @contextmanager
    def environment(self, repo: GitRepository) -> Iterator[dict[str, str]]:
        """Yield the env for one git operation, then remove staged secrets."""
        env = {"GIT_TERMINAL_PROMPT": "0"}
        staged: list[Path] = []
        try:
            if repo.auth_type == GitAuthType.ssh_key:
                env.update(self._stage_ssh_key(repo, staged))
            elif repo.auth_type == GitAuthType.http_token:
                env.update(self._stage_token(repo, staged))
            yield env
        finally:
            for path in staged:
                _remove_staged(path)

    def _stage_ssh_key(self, repo: GitRepository, staged: list[Path]) -> dict[str, str]:
        creds = self.credentials_for(repo)
        private_key = creds.get("private_key")
        if not private_key:
            raise ValueError("SSH key missing for ssh_key auth")
        private_key = unlock_private_key(private_key, creds.get("passphrase"))
        if not private_key.endswith("\n"):
            private_key += "\n"
        key_path = _write_private(self.ssh_dir, f"{safe_slug(repo.stack_id)}-", ".key", private_key)
        staged.append(key_path)

        known_hosts = self.known_hosts_path(repo)
        host, port = parse_ssh_remote(repo.url)
        if host:
            seed_known_hosts(host, port, known_hosts)
        return {"GIT_SSH_COMMAND": ssh_command(key_path, known_hosts)}

    def _stage_token(self, repo: GitRepository, staged: list[Path]) -> dict[str, str]:
        creds = self.credentials_for(repo)
        token = creds.get("token")
        if not token:
            raise ValueError("Token missing for http_token auth")
        username = creds.get("username") or _DEFAULT_TOKEN_USERNAMES.get(repo.provider, "git")
        store_path = _write_private(
            self.credentials_dir,
            f"{safe_slug(repo.stack_id)}-",
            ".git-credentials",
            credential_store_line(repo.url, username, token),
        )
        staged.append(store_path)
        helper = f"store --file={shlex.quote(str(store_path))}"
        # An empty helper first clears any helpers inherited from user/system config
        return {
            "GIT_CONFIG_COUNT": "2",
            "GIT_CONFIG_KEY_0": "credential.helper",
            "GIT_CONFIG_VALUE_0": "",
            "GIT_CONFIG_KEY_1": "credential.helper",
            "GIT_CONFIG_VALUE_1": helper,
        }
