"""Orchestrator that chains Fetch → Validate → Compare → Write → Publish for one refresh run."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Type

from ..core.deadline import Deadline
from ..core.errors import (
    ArtifactReadFailed,
    BranchResolutionFailed,
    BranchUpdateFailed,
    CpgoError,
    DeadlineExceeded,
    FetchFailed,
    InvalidProfile,
    PullRequestCreateFailed,
    PullRequestLookupFailed,
    UnmanagedPullRequest,
)
from ..core.ports import BranchWriter, ProfileFetcher, ProfileValidator, PullRequestService
from ..core.types import PullRequest, RepositoryRef, RunRequest, RunResult, is_blank

logger = logging.getLogger(__name__)


def append_marker(body: str, marker: str) -> str:
    """Make sure a pull request body carries the managed-by marker.

    Existing text is kept first and the marker follows after a blank line.
    A body that already contains the marker is returned unchanged.
    """
    if marker in body:
        return body
    if is_blank(body):
        return marker
    return body.rstrip("\n") + "\n\n" + marker


@contextmanager
def _stage(description: str, error_cls: Type[CpgoError]) -> Iterator[None]:
    """Wrap failures of one run stage in that stage's error class."""
    try:
        yield
    except (DeadlineExceeded, UnmanagedPullRequest, error_cls):
        raise
    except Exception as e:
        raise error_cls(f"{description}: {e}") from e


class RefreshOrchestrator:
    """Runs one fetch-compare-write cycle for a PGO profile."""

    def __init__(
        self,
        profile_fetcher: ProfileFetcher,
        profile_validator: ProfileValidator,
        branch_writer: BranchWriter,
        pull_requests: PullRequestService,
    ):
        if profile_fetcher is None:
            raise ValueError("profile fetcher is required")
        if profile_validator is None:
            raise ValueError("profile validator is required")
        if branch_writer is None:
            raise ValueError("branch writer is required")
        if pull_requests is None:
            raise ValueError("pull request service is required")
        self.profile_fetcher = profile_fetcher
        self.profile_validator = profile_validator
        self.branch_writer = branch_writer
        self.pull_requests = pull_requests

    def run(self, request: RunRequest, deadline: Optional[Deadline] = None) -> RunResult:
        """Refresh the repository artifact from a freshly sampled profile.

        Args:
            request: Run configuration; normalized before use
            deadline: End-to-end deadline shared by every stage

        Returns:
            Summary of what changed

        Raises:
            InvalidRequest: If required request fields are missing
            UnmanagedPullRequest: If the head branch already has a pull request
                that cpgo does not own; nothing is written in that case
            DeadlineExceeded: If the deadline passes or the run is cancelled
            CpgoError: Stage-specific subclasses for every other failure
        """
        deadline = deadline or Deadline()
        normalized = request.normalized()
        repository = normalized.repository_ref
        head_branch = normalized.repository.head_branch
        marker = normalized.pull_request.managed_by_marker
        log_extra = {"repository": str(repository), "head_branch": head_branch}

        deadline.check("fetch cpu profile")
        with _stage("fetch cpu profile", FetchFailed):
            profile = self.profile_fetcher.fetch_cpu_profile(
                normalized.profile.url,
                normalized.profile.seconds,
                normalized.profile.headers,
                deadline=deadline,
            )

        with _stage("validate cpu profile", InvalidProfile):
            self.profile_validator.validate_cpu_profile(profile)
        logger.info(f"Fetched valid CPU profile ({len(profile)} bytes)", extra={**log_extra, "stage": "validate"})

        base_branch = self._resolve_base_branch(repository, normalized.repository.base_branch, deadline)
        log_extra["base_branch"] = base_branch

        deadline.check("find open pull request")
        with _stage("find open pull request", PullRequestLookupFailed):
            open_pr = self.pull_requests.find_open_by_head(repository, base_branch, head_branch, deadline=deadline)

        if open_pr is not None and not open_pr.is_managed_by(marker):
            logger.error(
                f"Pull request #{open_pr.number} on {head_branch} is not managed by cpgo, refusing to update",
                extra={**log_extra, "stage": "find_pull_request", "pr_number": open_pr.number},
            )
            raise UnmanagedPullRequest(
                f"existing pull request #{open_pr.number} is not managed by cpgo",
                pull_request=open_pr,
            )

        deadline.check("read base branch pgo file")
        with _stage("read base branch pgo file", ArtifactReadFailed):
            current = self.branch_writer.read_file(
                repository, base_branch, normalized.repository.artifact_path, deadline=deadline,
            )

        if current.exists and current.content == profile:
            logger.info("Profile unchanged, nothing to do", extra={**log_extra, "stage": "compare"})
            return RunResult(
                base_branch=base_branch,
                head_branch=head_branch,
                pull_request_number=_pr_number(open_pr),
                noop=True,
            )

        deadline.check("update pgo branch")
        with _stage("update pgo branch", BranchUpdateFailed):
            written = self.branch_writer.upsert_file_and_force_branch(
                repository,
                base_branch,
                head_branch,
                normalized.repository.artifact_path,
                profile,
                normalized.commit.message,
                deadline=deadline,
            )

        result = RunResult(
            base_branch=base_branch,
            head_branch=head_branch,
            commit_sha=written.commit_sha,
            profile_changed=True,
        )

        if open_pr is not None:
            logger.info(
                f"Reusing pull request #{open_pr.number}",
                extra={**log_extra, "stage": "publish", "pr_number": open_pr.number, "commit_sha": written.commit_sha},
            )
            result.pull_request_number = open_pr.number
            return result

        deadline.check("create pull request")
        with _stage("create pull request", PullRequestCreateFailed):
            created = self.pull_requests.create(
                repository,
                base_branch,
                head_branch,
                normalized.pull_request.title,
                append_marker(normalized.pull_request.body, marker),
                deadline=deadline,
            )

        result.pull_request_number = created.number
        result.pull_request_created = True
        return result

    def _resolve_base_branch(self, repository: RepositoryRef, configured: str, deadline: Deadline) -> str:
        """Pick the configured base branch or fall back to the repository default."""
        if not is_blank(configured):
            return configured

        deadline.check("resolve default branch")
        with _stage("resolve default branch", BranchResolutionFailed):
            branch = self.branch_writer.default_branch(repository, deadline=deadline)
        if is_blank(branch):
            raise BranchResolutionFailed(f"resolve default branch: repository {repository} returned a blank branch")
        return branch


def _pr_number(existing: Optional[PullRequest]) -> int:
    if existing is None:
        return 0
    return existing.number
