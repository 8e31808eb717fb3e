from __future__ import annotations

from typing import Any

from app.models.git_repository import GitProvider
from app.services.git_providers.base import ZERO_SHA, NormalizedEvent, ProviderAdapter, split_ref, token_matches


class GenericAdapter(ProviderAdapter):
    """Self-hosted or unknown senders. Fields are read on a best-effort basis."""

    kind = GitProvider.generic

    def _supplied_token(self, headers: dict[str, str]) -> str | None:
        return headers.get("x-webhook-token") or headers.get("x-webhook-secret")

    def verify(self, raw_payload: bytes, headers: dict[str, str], secret: str | None) -> bool:
        if not secret:
            return False
        return token_matches(secret, self._supplied_token(headers))

    def normalize(self, payload: dict[str, Any], headers: dict[str, str], verified: bool) -> NormalizedEvent:
        event_type = headers.get("x-webhook-event") or str(payload.get("event") or "push")
        branch, tag = split_ref(payload.get("ref") or payload.get("branch"))
        if not tag and payload.get("tag"):
            tag = str(payload["tag"])

        head = payload.get("head_commit") if isinstance(payload.get("head_commit"), dict) else {}
        commits = payload.get("commits") if isinstance(payload.get("commits"), list) else []
        last = commits[-1] if commits and isinstance(commits[-1], dict) else {}

        sha = payload.get("after") or payload.get("commit") or payload.get("sha") or head.get("id") or last.get("id")
        message = payload.get("message") or head.get("message") or last.get("message")
        author = payload.get("author")
        if isinstance(author, dict):
            author = author.get("name") or author.get("username")
        if not author:
            author = _name_of(head.get("author")) or _name_of(last.get("author"))

        deleted = str(sha or "") == ZERO_SHA
        return NormalizedEvent(
            provider=self.kind,
            event_type=event_type,
            branch=branch,
            tag=tag,
            commit_sha=None if deleted else (str(sha) if sha else None),
            commit_message=str(message) if message else None,
            author=str(author) if author else None,
            verified=verified,
            triggers_build=event_type == "push" and not deleted,
        )


def _name_of(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name") or value.get("username")
    if isinstance(value, str):
        return value
    return None
