from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from app.models.git_repository import GitProvider
from app.services.git_providers.base import (
    API_TIMEOUT_SECONDS,
    NormalizedEvent,
    ProviderAdapter,
    hmac_sha256_matches,
    remote_host_and_path,
)

logger = logging.getLogger(__name__)


class BitbucketAdapter(ProviderAdapter):
    """Bitbucket Cloud.

    With a webhook secret, deliveries must carry an ``X-Hub-Signature``
    HMAC-SHA256 of the body. Without one, only the presence of the delivery
    headers is checked, which proves nothing about the sender. Configure a
    secret for any repository that deploys to production.
    """

    kind = GitProvider.bitbucket

    def signature_header(self, headers: dict[str, str]) -> str | None:
        return headers.get("x-hub-signature")

    def verify(self, raw_payload: bytes, headers: dict[str, str], secret: str | None) -> bool:
        if secret:
            return hmac_sha256_matches(secret, raw_payload, self.signature_header(headers))
        return bool(headers.get("x-request-uuid") and headers.get("x-hook-uuid"))

    def normalize(self, payload: dict[str, Any], headers: dict[str, str], verified: bool) -> NormalizedEvent:
        event_type = headers.get("x-event-key", "repo:push")
        signature = self.signature_header(headers)
        if event_type != "repo:push":
            return NormalizedEvent(
                provider=self.kind, event_type=event_type, verified=verified, signature=signature, triggers_build=False
            )

        push = payload.get("push") if isinstance(payload.get("push"), dict) else {}
        changes = push.get("changes") if isinstance(push.get("changes"), list) else []
        change = changes[0] if changes and isinstance(changes[0], dict) else {}
        new = change.get("new") if isinstance(change.get("new"), dict) else None
        if not new:
            # Branch or tag deletion
            return NormalizedEvent(
                provider=self.kind, event_type=event_type, verified=verified, signature=signature, triggers_build=False
            )

        target = new.get("target") if isinstance(new.get("target"), dict) else {}
        ref_type = new.get("type")
        name = new.get("name")
        author = None
        raw_author = target.get("author")
        if isinstance(raw_author, dict):
            user = raw_author.get("user")
            if isinstance(user, dict):
                author = user.get("display_name") or user.get("nickname")
            author = author or raw_author.get("raw")
        return NormalizedEvent(
            provider=self.kind,
            event_type=event_type,
            branch=name if ref_type in ("branch", "named_branch") else None,
            tag=name if ref_type == "tag" else None,
            commit_sha=target.get("hash"),
            commit_message=target.get("message"),
            author=author,
            verified=verified,
            signature=signature,
            triggers_build=bool(name),
        )

    def api_default_branch(self, remote_url: str, credentials: Mapping[str, str]) -> str | None:
        _, path = remote_host_and_path(remote_url)
        parts = path.split("/")
        if len(parts) < 2:
            return None
        resp = httpx.get(
            f"https://api.bitbucket.org/2.0/repositories/{parts[0]}/{parts[1]}",
            auth=(credentials.get("username") or "x-token-auth", credentials["token"]),
            timeout=API_TIMEOUT_SECONDS,
        )
        if resp.status_code != 200:
            logger.info("Bitbucket repository API returned %d for %s", resp.status_code, path)
            return None
        mainbranch = resp.json().get("mainbranch")
        return mainbranch.get("name") if isinstance(mainbranch, dict) else None
