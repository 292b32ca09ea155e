"""Thin wrapper around PyGithub for authenticated GitHub API access."""

from __future__ import annotations

from github import Auth, Github
from github.Repository import Repository


class GitHubClient:
    """Authenticated GitHub client that caches repository handles by slug.

    Usage:
        client = GitHubClient(token="ghp_...")
        repo = client.get_repo("owner/repo")  # PyGithub Repository object
    """

    def __init__(self, token: str) -> None:
        self._gh = Github(auth=Auth.Token(token))
        self._repos: dict[str, Repository] = {}

    def get_repo(self, full_name: str) -> Repository:
        key = full_name.lower()
        if key not in self._repos:
            self._repos[key] = self._gh.get_repo(full_name)
        return self._repos[key]

    def close(self) -> None:
        self._gh.close()
