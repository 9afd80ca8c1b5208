"""Core data types and Pydantic models."""

from typing import Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidRequest

DEFAULT_PROFILE_SECONDS = 30
DEFAULT_HEAD_BRANCH = "cpgo"
DEFAULT_MANAGED_BY_MARKER = "<!-- managed-by:cpgo -->"
DEFAULT_PR_TITLE = "perf(pgo): refresh pgo profile"
DEFAULT_PR_BODY = "Automated PGO profile refresh."
DEFAULT_COMMIT_MESSAGE = "perf(pgo): refresh pgo profile"


def is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class RepositoryRef(BaseModel):
    """Immutable identity of a hosted repository."""
    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., description="Repository owner (user or organization)")
    name: str = Field(..., description="Repository name")

    def validate_ref(self) -> "RepositoryRef":
        """Raise InvalidRequest unless owner and name are set."""
        if is_blank(self.owner):
            raise InvalidRequest("repository owner is required", field="owner")
        if is_blank(self.name):
            raise InvalidRequest("repository name is required", field="name")
        return self

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}"


class ProfileSettings(BaseModel):
    """Where and how to collect the CPU profile."""
    url: Optional[str] = Field(None, description="pprof CPU profile endpoint")
    seconds: int = Field(default=0, description="Sample duration in seconds")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra request headers")


class RepositorySettings(BaseModel):
    """Target repository and branch strategy."""
    owner: str = Field(default="", description="Repository owner")
    name: str = Field(default="", description="Repository name")
    artifact_path: str = Field(default="", description="Path of the PGO profile in the repository")
    base_branch: str = Field(default="", description="Branch the update is built on; blank means default branch")
    head_branch: str = Field(default="", description="Branch that receives the profile commit")


class PullRequestSettings(BaseModel):
    """Identity and metadata of the automation pull request."""
    title: str = ""
    body: str = ""
    managed_by_marker: str = ""


class CommitSettings(BaseModel):
    message: str = ""


class RunRequest(BaseModel):
    """One complete profile refresh operation."""
    profile: ProfileSettings = Field(default_factory=ProfileSettings)
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    pull_request: PullRequestSettings = Field(default_factory=PullRequestSettings)
    commit: CommitSettings = Field(default_factory=CommitSettings)

    @property
    def repository_ref(self) -> RepositoryRef:
        return RepositoryRef(owner=self.repository.owner, name=self.repository.name)

    def normalized(self) -> "RunRequest":
        """Validate required fields and return a copy with defaults applied.

        Raises:
            InvalidRequest: If the profile URL is missing or lacks scheme and
                host, or the repository owner, name or artifact path is blank.
        """
        if is_blank(self.profile.url):
            raise InvalidRequest("profile url is required", field="profile.url")
        try:
            url = httpx.URL(self.profile.url.strip())
        except httpx.InvalidURL as e:
            raise InvalidRequest(f"parse profile url: {e}", field="profile.url") from e
        if not url.scheme or not url.host:
            raise InvalidRequest("profile url must include scheme and host", field="profile.url")

        if is_blank(self.repository.owner):
            raise InvalidRequest("repository owner is required", field="repository.owner")
        if is_blank(self.repository.name):
            raise InvalidRequest("repository name is required", field="repository.name")
        if is_blank(self.repository.artifact_path):
            raise InvalidRequest("repository artifact path is required", field="repository.artifact_path")

        profile = self.profile.model_copy(update={
            "seconds": self.profile.seconds if self.profile.seconds > 0 else DEFAULT_PROFILE_SECONDS,
            "headers": dict(self.profile.headers),
        })
        repository = self.repository.model_copy(update={
            "head_branch": DEFAULT_HEAD_BRANCH if is_blank(self.repository.head_branch) else self.repository.head_branch,
        })
        pull_request = PullRequestSettings(
            title=DEFAULT_PR_TITLE if is_blank(self.pull_request.title) else self.pull_request.title,
            body=DEFAULT_PR_BODY if is_blank(self.pull_request.body) else self.pull_request.body,
            managed_by_marker=(
                DEFAULT_MANAGED_BY_MARKER
                if is_blank(self.pull_request.managed_by_marker)
                else self.pull_request.managed_by_marker
            ),
        )
        commit = CommitSettings(
            message=DEFAULT_COMMIT_MESSAGE if is_blank(self.commit.message) else self.commit.message,
        )
        return RunRequest(profile=profile, repository=repository, pull_request=pull_request, commit=commit)


class PullRequest(BaseModel):
    """Subset of pull request metadata cpgo works with."""
    number: int = Field(..., description="Pull request number")
    title: str = Field(default="", description="Pull request title")
    body: str = Field(default="", description="Pull request body")
    url: str = Field(default="", description="Pull request HTML URL")

    def is_managed_by(self, marker: str) -> bool:
        return marker in self.body


class ReadFileResult(BaseModel):
    """Optional file read; absence is not an error."""
    content: bytes = b""
    exists: bool = False


class UpsertFileResult(BaseModel):
    commit_sha: str
    branch_created: bool = False


class RunResult(BaseModel):
    """What changed during one run."""
    base_branch: str
    head_branch: str
    pull_request_number: int = 0
    commit_sha: str = ""
    profile_changed: bool = False
    pull_request_created: bool = False
    noop: bool = False
