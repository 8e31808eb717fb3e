"""Provider adapters, keyed by provider kind."""

from __future__ import annotations

from app.models.git_repository import GitProvider
from app.services.git_providers.base import NormalizedEvent, ProviderAdapter
from app.services.git_providers.bitbucket import BitbucketAdapter
from app.services.git_providers.generic import GenericAdapter
from app.services.git_providers.github import GitHubAdapter
from app.services.git_providers.gitlab import GitLabAdapter

PROVIDERS: dict[GitProvider, ProviderAdapter] = {
    GitProvider.github: GitHubAdapter(),
    GitProvider.gitlab: GitLabAdapter(),
    GitProvider.bitbucket: BitbucketAdapter(),
    GitProvider.generic: GenericAdapter(),
}


def get_provider(kind: GitProvider | str) -> ProviderAdapter:
    try:
        return PROVIDERS[GitProvider(kind)]
    except ValueError as exc:
        raise ValueError(f"Unknown provider: {kind}") from exc


__all__ = ["NormalizedEvent", "PROVIDERS", "ProviderAdapter", "get_provider"]
