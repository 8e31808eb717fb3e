from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from app.models.git_repository import GitProvider
from app.services.git_providers.base import (
    API_TIMEOUT_SECONDS,
    ZERO_SHA,
    NormalizedEvent,
    ProviderAdapter,
    hmac_sha256_matches,
    optional_str,
    remote_host_and_path,
    split_ref,
)
from app.services.pipeline_errors import MalformedPayloadError

logger = logging.getLogger(__name__)


class GitHubAdapter(ProviderAdapter):
    kind = GitProvider.github

    def signature_header(self, headers: dict[str, str]) -> str | None:
        return headers.get("x-hub-signature-256")

    def verify(self, raw_payload: bytes, headers: dict[str, str], secret: str | None) -> bool:
        if not secret:
            return False
        return hmac_sha256_matches(secret, raw_payload, self.signature_header(headers))

    def normalize(self, payload: dict[str, Any], headers: dict[str, str], verified: bool) -> NormalizedEvent:
        event_type = headers.get("x-github-event", "push")
        signature = self.signature_header(headers)

        if event_type == "push":
            branch, tag = split_ref(payload.get("ref"))
            after = optional_str(payload.get("after"), "after") or ""
            head_commit = payload.get("head_commit") if isinstance(payload.get("head_commit"), dict) else {}
            author = _commit_author(head_commit) or _pusher(payload)
            deleted = bool(payload.get("deleted")) or after == ZERO_SHA
            return NormalizedEvent(
                provider=self.kind,
                event_type=event_type,
                branch=branch,
                tag=tag,
                commit_sha=(head_commit.get("id") or after or None) if not deleted else None,
                commit_message=head_commit.get("message"),
                author=author,
                verified=verified,
                signature=signature,
                triggers_build=not deleted and bool(branch or tag),
            )

        if event_type == "release":
            release = payload.get("release") if isinstance(payload.get("release"), dict) else {}
            action = payload.get("action")
            return NormalizedEvent(
                provider=self.kind,
                event_type=event_type,
                tag=release.get("tag_name"),
                commit_message=release.get("name") or release.get("body"),
                author=_login(release.get("author")),
                verified=verified,
                signature=signature,
                triggers_build=action in (None, "published", "released") and bool(release.get("tag_name")),
            )

        # ping and anything else is recorded but never builds
        return NormalizedEvent(
            provider=self.kind,
            event_type=event_type,
            verified=verified,
            signature=signature,
            triggers_build=False,
        )

    def api_default_branch(self, remote_url: str, credentials: Mapping[str, str]) -> str | None:
        _, path = remote_host_and_path(remote_url)
        parts = path.split("/")
        if len(parts) < 2:
            return None
        resp = httpx.get(
            f"https://api.github.com/repos/{parts[0]}/{parts[1]}",
            headers={
                "Authorization": f"token {credentials['token']}",
                "Accept": "application/vnd.github.v3+json",
            },
            timeout=API_TIMEOUT_SECONDS,
        )
        if resp.status_code != 200:
            logger.info("GitHub repo API returned %d for %s/%s", resp.status_code, parts[0], parts[1])
            return None
        return resp.json().get("default_branch")


def _commit_author(commit: dict[str, Any]) -> str | None:
    author = commit.get("author")
    if isinstance(author, dict):
        return author.get("name") or author.get("username")
    committer = commit.get("committer")
    if isinstance(committer, dict):
        return committer.get("name")
    return None


def _login(user: Any) -> str | None:
    if user is None:
        return None
    if not isinstance(user, dict):
        raise MalformedPayloadError("release author must be an object")
    return user.get("login")


def _pusher(payload: dict[str, Any]) -> str | None:
    pusher = payload.get("pusher")
    if isinstance(pusher, dict) and pusher.get("name"):
        return pusher["name"]
    sender = payload.get("sender")
    if isinstance(sender, dict):
        return sender.get("login")
    return None
