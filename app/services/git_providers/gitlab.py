from __future__ import annotations

import logging
import urllib.parse
from collections.abc import Mapping
from typing import Any

import httpx

from app.models.git_repository import GitProvider
from app.services.git_providers.base import (
    API_TIMEOUT_SECONDS,
    ZERO_SHA,
    NormalizedEvent,
    ProviderAdapter,
    optional_str,
    remote_host_and_path,
    split_ref,
    token_matches,
)

logger = logging.getLogger(__name__)

_PUSH_EVENTS = {"Push Hook", "Tag Push Hook", "System Hook"}


class GitLabAdapter(ProviderAdapter):
    kind = GitProvider.gitlab

    def verify(self, raw_payload: bytes, headers: dict[str, str], secret: str | None) -> bool:
        if not secret:
            return False
        return token_matches(secret, headers.get("x-gitlab-token"))

    def normalize(self, payload: dict[str, Any], headers: dict[str, str], verified: bool) -> NormalizedEvent:
        event_type = headers.get("x-gitlab-event") or str(payload.get("object_kind") or "Push Hook")
        if event_type not in _PUSH_EVENTS:
            return NormalizedEvent(provider=self.kind, event_type=event_type, verified=verified, triggers_build=False)

        branch, tag = split_ref(payload.get("ref"))
        after = optional_str(payload.get("after") or payload.get("checkout_sha"), "after") or ""
        commits = payload.get("commits") if isinstance(payload.get("commits"), list) else []
        # GitLab lists commits oldest first
        last = commits[-1] if commits and isinstance(commits[-1], dict) else {}
        author = None
        if isinstance(last.get("author"), dict):
            author = last["author"].get("name")
        author = author or payload.get("user_name") or payload.get("user_username")
        deleted = after == ZERO_SHA
        return NormalizedEvent(
            provider=self.kind,
            event_type=event_type,
            branch=branch,
            tag=tag,
            commit_sha=None if deleted else (last.get("id") or after or None),
            commit_message=last.get("message") or payload.get("message"),
            author=author,
            verified=verified,
            triggers_build=not deleted and bool(branch or tag),
        )

    def api_default_branch(self, remote_url: str, credentials: Mapping[str, str]) -> str | None:
        host, path = remote_host_and_path(remote_url)
        if not host or not path:
            return None
        project = urllib.parse.quote(path, safe="")
        resp = httpx.get(
            f"https://{host}/api/v4/projects/{project}",
            headers={"PRIVATE-TOKEN": credentials["token"]},
            timeout=API_TIMEOUT_SECONDS,
        )
        if resp.status_code != 200:
            logger.info("GitLab project API returned %d for %s", resp.status_code, path)
            return None
        return resp.json().get("default_branch")
