"""Common pieces of the per-provider webhook adapters."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import urllib.parse
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import settings
from app.models.git_repository import GitProvider
from app.services.pipeline_errors import MalformedPayloadError, VerificationError
from app.services.process_runner import run_command

logger = logging.getLogger(__name__)

ZERO_SHA = "0" * 40
API_TIMEOUT_SECONDS = 10.0
LS_REMOTE_TIMEOUT_SECONDS = 30

_SYMREF_RE = re.compile(r"^ref: refs/heads/(\S+)\s+HEAD", re.MULTILINE)
_SCP_URL_RE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")


@dataclass(frozen=True)
class NormalizedEvent:
    provider: GitProvider
    event_type: str
    branch: str | None = None
    tag: str | None = None
    commit_sha: str | None = None
    commit_message: str | None = None
    author: str | None = None
    verified: bool = False
    signature: str | None = None
    # False for pings, deletions and event types that never build
    triggers_build: bool = True

    def __post_init__(self) -> None:
        for name in ("event_type", "branch", "tag", "commit_sha", "commit_message", "author", "signature"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise MalformedPayloadError(f"Payload field for {name} must be a string")

    @property
    def ref_name(self) -> str | None:
        return self.branch or self.tag


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in headers.items()}


def hmac_sha256_matches(secret: str, body: bytes, supplied: str | None) -> bool:
    """Constant-time check of a ``sha256=<hex>`` signature over ``body``."""
    if not secret or not supplied or not supplied.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), supplied.strip().encode())


def token_matches(secret: str, supplied: str | None) -> bool:
    if not secret or not supplied:
        return False
    return hmac.compare_digest(secret.encode(), supplied.encode())


def split_ref(ref: str | None) -> tuple[str | None, str | None]:
    """``refs/heads/x`` → (x, None); ``refs/tags/v1`` → (None, v1); bare names are branches."""
    if not ref:
        return None, None
    if not isinstance(ref, str):
        raise MalformedPayloadError("ref must be a string")
    if ref.startswith("refs/heads/"):
        return ref.removeprefix("refs/heads/"), None
    if ref.startswith("refs/tags/"):
        return None, ref.removeprefix("refs/tags/")
    if ref.startswith("refs/"):
        return None, None
    return ref, None


def optional_str(value: Any, field: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise MalformedPayloadError(f"{field} must be a string")


def remote_host_and_path(url: str) -> tuple[str | None, str]:
    """Split an http(s), ssh:// or scp-style remote into host and repository path."""
    if "://" in url:
        parsed = urllib.parse.urlparse(url)
        return parsed.hostname, parsed.path.strip("/").removesuffix(".git")
    match = _SCP_URL_RE.match(url)
    if match:
        return match.group("host"), match.group("path").strip("/").removesuffix(".git")
    return None, url.strip("/").removesuffix(".git")


def ls_remote_default_branch(remote_url: str, env: Mapping[str, str] | None = None) -> str | None:
    git_env = {"GIT_TERMINAL_PROMPT": "0"}
    if env:
        git_env.update(env)
    result = run_command(
        [settings.git_binary, "ls-remote", "--symref", remote_url, "HEAD"],
        timeout=LS_REMOTE_TIMEOUT_SECONDS,
        env=git_env,
        display="git ls-remote --symref <remote> HEAD",
    )
    if not result.ok:
        logger.info("ls-remote default branch lookup failed: %s", result.tail(300))
        return None
    match = _SYMREF_RE.search(result.output)
    return match.group(1) if match else None


class ProviderAdapter:
    """Verification, normalization and default-branch lookup for one provider."""

    kind: GitProvider

    def verify_and_parse(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secret: str | None,
    ) -> NormalizedEvent:
        lowered = lower_headers(headers)
        verified = self.verify(raw_payload, lowered, secret)
        if secret and not verified:
            raise VerificationError(f"{self.kind.value} webhook verification failed")
        payload = self.decode(raw_payload)
        try:
            return self.normalize(payload, lowered, verified)
        except (AttributeError, TypeError) as exc:
            raise MalformedPayloadError(f"{self.kind.value} payload has unexpected field types") from exc

    def decode(self, raw_payload: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_payload or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayloadError("Payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Payload must be a JSON object")
        return payload

    def verify(self, raw_payload: bytes, headers: dict[str, str], secret: str | None) -> bool:
        raise NotImplementedError

    def normalize(self, payload: dict[str, Any], headers: dict[str, str], verified: bool) -> NormalizedEvent:
        raise NotImplementedError

    def signature_header(self, headers: dict[str, str]) -> str | None:
        return None

    def resolve_default_branch(
        self,
        remote_url: str,
        credentials: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Provider API when a token is at hand, then ``git ls-remote``, then ``main``."""
        token = (credentials or {}).get("token")
        if token:
            try:
                branch = self.api_default_branch(remote_url, credentials or {})
                if branch:
                    return branch
            except httpx.HTTPError:
                logger.debug("Default branch API lookup failed for %s", self.kind.value, exc_info=True)
        branch = ls_remote_default_branch(remote_url, env)
        return branch or "main"

    def api_default_branch(self, remote_url: str, credentials: Mapping[str, str]) -> str | None:
        return None
