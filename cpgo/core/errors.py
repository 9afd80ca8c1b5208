"""Exception taxonomy for cpgo runs.

Every failure raised by cpgo derives from ``CpgoError``. Stage errors are
raised with ``raise ... from err`` so callers can walk ``__cause__`` down to
the transport or API failure that started it.
"""

from typing import Any, Dict, List, Optional

import httpx


class CpgoError(Exception):
    """Base class for all cpgo errors."""


class InvalidRequest(CpgoError):
    """A caller or configuration supplied an unusable value."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConfigError(CpgoError):
    """The configuration file could not be read or is invalid."""


class CredentialError(CpgoError):
    """GitHub credentials could not be provisioned."""


class DeadlineExceeded(CpgoError):
    """The run deadline passed or the run was cancelled."""


class FetchFailed(CpgoError):
    """The CPU profile could not be fetched."""


class InvalidProfile(CpgoError):
    """The fetched payload is not a usable CPU profile."""


class BranchResolutionFailed(CpgoError):
    """The base branch could not be resolved."""


class UnmanagedPullRequest(CpgoError):
    """An open pull request on the head branch is not owned by cpgo."""

    def __init__(self, message: str, pull_request: Any = None):
        super().__init__(message)
        self.pull_request = pull_request


class PullRequestLookupFailed(CpgoError):
    """Listing open pull requests failed."""


class PullRequestCreateFailed(CpgoError):
    """Opening the pull request failed."""


class ArtifactReadFailed(CpgoError):
    """Reading the artifact from the base branch failed."""


class BranchUpdateFailed(CpgoError):
    """Writing the artifact commit or moving the head branch failed."""


class GitHubTransportError(CpgoError):
    """The GitHub API could not be reached."""


class GitHubAPIError(CpgoError):
    """GitHub answered with a non-success status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        errors: Optional[List[Any]] = None,
        method: str = "",
        path: str = "",
    ):
        self.status_code = status_code
        self.message = message
        self.errors = errors or []
        self.method = method
        self.path = path
        prefix = f"{method} {path}: ".lstrip() if (method or path) else ""
        super().__init__(f"{prefix}{status_code} {message}")

    @classmethod
    def from_response(cls, response: httpx.Response, method: str = "", path: str = "") -> "GitHubAPIError":
        """Build an error from a GitHub error document."""
        message = response.reason_phrase
        errors: List[Any] = []
        try:
            document = response.json()
        except ValueError:
            document = None
        if isinstance(document, dict):
            message = document.get("message") or message
            errors = document.get("errors") or []
        return cls(response.status_code, message, errors, method=method, path=path)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_reference_missing(self) -> bool:
        """True for the 422 answer GitHub gives when updating an absent ref."""
        if self.status_code != 422:
            return False
        needle = "reference does not exist"
        if needle in self.message.lower():
            return True
        for item in self.errors:
            text = item.get("message", "") if isinstance(item, dict) else str(item)
            if needle in text.lower():
                return True
        return False


class GitObjectError(CpgoError):
    """A git object operation against the hosting platform failed."""

    def __init__(self, operation: str, reason: Any = "", sha: Optional[str] = None):
        self.operation = operation
        self.sha = sha
        target = f" {sha}" if sha else ""
        detail = f": {reason}" if reason else ""
        super().__init__(f"{operation}{target}{detail}")


class RepositoryLookupFailed(GitObjectError):
    """Reading repository metadata or git objects failed."""


class EmptyDefaultBranch(CpgoError):
    """The repository reports a blank default branch."""


class TreeTruncated(GitObjectError):
    """The recursive tree listing was truncated before the path was found."""


class UnexpectedEntryType(GitObjectError):
    """The artifact path names a tree entry that is not a blob."""


class BlobCreateFailed(GitObjectError):
    pass


class TreeCreateFailed(GitObjectError):
    pass


class CommitCreateFailed(GitObjectError):
    pass


class RefUpdateFailed(GitObjectError):
    """Neither updating nor creating the head ref succeeded."""

    def __init__(
        self,
        operation: str,
        reason: Any = "",
        sha: Optional[str] = None,
        retry_error: Optional[BaseException] = None,
    ):
        super().__init__(operation, reason, sha)
        self.retry_error = retry_error


def error_details(err: BaseException) -> Dict[str, Any]:
    """Flatten an error and its cause chain for structured logs."""
    chain = []
    current: Optional[BaseException] = err
    while current is not None:
        chain.append(f"{type(current).__name__}: {current}")
        current = current.__cause__
    return {"error": type(err).__name__, "causes": chain}
