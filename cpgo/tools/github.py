"""GitHub API client for git object and pull request operations."""

import base64
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ..core.deadline import Deadline, request_timeout
from ..core.errors import (
    BlobCreateFailed,
    CommitCreateFailed,
    DeadlineExceeded,
    EmptyDefaultBranch,
    GitHubAPIError,
    GitHubTransportError,
    InvalidRequest,
    PullRequestCreateFailed,
    PullRequestLookupFailed,
    RefUpdateFailed,
    RepositoryLookupFailed,
    TreeCreateFailed,
    TreeTruncated,
    UnexpectedEntryType,
)
from ..core.ports import BranchWriter, PullRequestService
from ..core.types import PullRequest, ReadFileResult, RepositoryRef, UpsertFileResult, is_blank

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_GITHUB_TIMEOUT = 30.0
API_VERSION = "2022-11-28"
FILE_MODE_REGULAR = "100644"
TREE_ENTRY_BLOB = "blob"


def _require(value: Optional[str], field: str) -> None:
    if is_blank(value):
        raise InvalidRequest(f"{field.replace('_', ' ')} is required", field=field)


def _sha(document: Any, *keys: str) -> str:
    """Dig a SHA out of a GitHub JSON document, "" when absent."""
    current = document
    for key in keys:
        if not isinstance(current, dict):
            return ""
        current = current.get(key)
    return current.strip() if isinstance(current, str) else ""


class GitHubClient(BranchWriter, PullRequestService):
    """Client for GitHub REST API v3.

    Implements both the branch writer (git data API: refs, commits, trees,
    blobs) and the pull request directory. The underlying httpx client must
    already carry credentials.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_GITHUB_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
    ):
        if http_client is None and is_blank(token):
            raise ValueError("token or http_client is required")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        if not is_blank(token):
            self.headers["Authorization"] = f"Bearer {token}"
        self.client = http_client or httpx.Client(timeout=timeout)

    def _request(
        self,
        method: str,
        path: str,
        deadline: Optional[Deadline] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        """Make one API request.

        Raises:
            DeadlineExceeded: If the run deadline passed before or during the call
            GitHubTransportError: On connection or protocol failures
            GitHubAPIError: On a non-success status
        """
        if deadline is not None:
            deadline.check(f"{method} {path}")
        headers = dict(self.headers)
        if accept:
            headers["Accept"] = accept

        try:
            response = self.client.request(
                method,
                f"{self.api_url}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=request_timeout(deadline, self.timeout),
            )
        except httpx.TimeoutException as e:
            if deadline is not None and deadline.expired():
                raise DeadlineExceeded(f"deadline exceeded during {method} {path}") from e
            raise GitHubTransportError(f"{method} {path}: {e}") from e
        except httpx.HTTPError as e:
            raise GitHubTransportError(f"{method} {path}: {e}") from e

        if response.is_error:
            raise GitHubAPIError.from_response(response, method=method, path=path)
        return response

    def _repo_path(self, repository: RepositoryRef) -> str:
        return f"/repos/{repository.owner}/{repository.name}"

    def default_branch(self, repository: RepositoryRef, deadline: Optional[Deadline] = None) -> str:
        """Return the repository default branch name."""
        repository.validate_ref()
        try:
            response = self._request("GET", self._repo_path(repository), deadline)
        except (GitHubAPIError, GitHubTransportError) as e:
            raise RepositoryLookupFailed("get repository", e) from e

        branch = (response.json().get("default_branch") or "").strip()
        if not branch:
            raise EmptyDefaultBranch(f"repository {repository} default branch is empty")
        return branch

    def read_file(
        self,
        repository: RepositoryRef,
        branch: str,
        path: str,
        deadline: Optional[Deadline] = None,
    ) -> ReadFileResult:
        """Read raw file bytes from a branch using git object lookups.

        Args:
            repository: Target repository
            branch: Branch to read from
            path: Exact path of the file in the branch tree

        Returns:
            File content, or ``exists=False`` when the path is absent

        Raises:
            TreeTruncated: If the path was not found in a truncated listing
            UnexpectedEntryType: If the path is not a blob
            RepositoryLookupFailed: On any other lookup failure
        """
        repository.validate_ref()
        _require(branch, "branch")
        _require(path, "path")

        commit_sha, tree_sha = self._base_commit_tree(repository, branch, deadline)

        try:
            response = self._request(
                "GET",
                f"{self._repo_path(repository)}/git/trees/{tree_sha}",
                deadline,
                params={"recursive": "1"},
            )
        except (GitHubAPIError, GitHubTransportError) as e:
            raise RepositoryLookupFailed(f"get base tree for commit {commit_sha}", e, sha=tree_sha) from e
        tree = response.json()

        blob_sha = ""
        for entry in tree.get("tree") or []:
            if entry.get("path") != path:
                continue
            if entry.get("type") != TREE_ENTRY_BLOB:
                raise UnexpectedEntryType(
                    f"path {path!r} is a {entry.get('type')!r} entry, not a blob",
                    sha=entry.get("sha"),
                )
            blob_sha = (entry.get("sha") or "").strip()
            break

        if not blob_sha:
            if tree.get("truncated"):
                raise TreeTruncated(f"tree listing was truncated while resolving path {path!r}", sha=tree_sha)
            return ReadFileResult(exists=False)

        try:
            response = self._request(
                "GET",
                f"{self._repo_path(repository)}/git/blobs/{blob_sha}",
                deadline,
                accept="application/vnd.github.raw",
            )
        except GitHubAPIError as e:
            # blob vanished between the tree listing and this call
            if e.is_not_found:
                return ReadFileResult(exists=False)
            raise RepositoryLookupFailed("get blob", e, sha=blob_sha) from e
        except GitHubTransportError as e:
            raise RepositoryLookupFailed("get blob", e, sha=blob_sha) from e

        return ReadFileResult(content=response.content, exists=True)

    def upsert_file_and_force_branch(
        self,
        repository: RepositoryRef,
        base_branch: str,
        head_branch: str,
        path: str,
        content: bytes,
        commit_message: str,
        deadline: Optional[Deadline] = None,
    ) -> UpsertFileResult:
        """Commit a single file change on top of the base branch and point the head branch at it.

        Args:
            repository: Target repository
            base_branch: Branch whose tip becomes the parent commit
            head_branch: Branch force-updated (or created) to the new commit
            path: File path replaced in the base tree
            content: New file bytes
            commit_message: Commit message

        Returns:
            New commit SHA and whether the head branch had to be created
        """
        repository.validate_ref()
        _require(base_branch, "base_branch")
        _require(head_branch, "head_branch")
        _require(path, "path")
        _require(commit_message, "commit_message")

        base_commit_sha, base_tree_sha = self._base_commit_tree(repository, base_branch, deadline)
        blob_sha = self._create_blob(repository, content, deadline)
        tree_sha = self._create_tree(repository, path, base_tree_sha, blob_sha, deadline)
        commit_sha = self._create_commit(repository, commit_message, tree_sha, base_commit_sha, deadline)
        branch_created = self._update_head_ref(repository, head_branch, commit_sha, deadline)

        logger.info(
            f"Pointed {head_branch} at {commit_sha}",
            extra={"repository": str(repository), "head_branch": head_branch, "commit_sha": commit_sha},
        )
        return UpsertFileResult(commit_sha=commit_sha, branch_created=branch_created)

    def find_open_by_head(
        self,
        repository: RepositoryRef,
        base_branch: str,
        head_branch: str,
        deadline: Optional[Deadline] = None,
    ) -> Optional[PullRequest]:
        """Find the open pull request for a base/head pair, if any."""
        repository.validate_ref()
        _require(base_branch, "base_branch")
        _require(head_branch, "head_branch")

        try:
            response = self._request(
                "GET",
                f"{self._repo_path(repository)}/pulls",
                deadline,
                params={
                    "state": "open",
                    "base": base_branch,
                    "head": f"{repository.owner}:{head_branch}",
                    "per_page": 1,
                },
            )
        except (GitHubAPIError, GitHubTransportError) as e:
            raise PullRequestLookupFailed(f"list pull requests: {e}") from e

        pulls = response.json()
        if not pulls:
            return None
        return self._pull_request(pulls[0])

    def create(
        self,
        repository: RepositoryRef,
        base_branch: str,
        head_branch: str,
        title: str,
        body: str,
        deadline: Optional[Deadline] = None,
    ) -> PullRequest:
        """Open a pull request from head branch to base branch.

        Raises:
            InvalidRequest: If base, head, title or body is blank
            PullRequestCreateFailed: If GitHub rejects the request
        """
        repository.validate_ref()
        _require(base_branch, "base_branch")
        _require(head_branch, "head_branch")
        if is_blank(title):
            raise InvalidRequest("pull request title is required", field="title")
        if is_blank(body):
            raise InvalidRequest("pull request body is required", field="body")

        try:
            response = self._request(
                "POST",
                f"{self._repo_path(repository)}/pulls",
                deadline,
                json={"title": title, "head": head_branch, "base": base_branch, "body": body},
            )
        except (GitHubAPIError, GitHubTransportError) as e:
            raise PullRequestCreateFailed(f"create pull request: {e}") from e

        pull_request = self._pull_request(response.json())
        logger.info(
            f"Opened pull request #{pull_request.number}",
            extra={"repository": str(repository), "pr_number": pull_request.number, "url": pull_request.url},
        )
        return pull_request

    @staticmethod
    def _pull_request(document: Dict[str, Any]) -> PullRequest:
        return PullRequest(
            number=document.get("number") or 0,
            title=document.get("title") or "",
            body=document.get("body") or "",
            url=document.get("html_url") or "",
        )

    def _base_commit_tree(
        self,
        repository: RepositoryRef,
        branch: str,
        deadline: Optional[Deadline],
    ) -> Tuple[str, str]:
        """Resolve a branch to its tip commit SHA and that commit's tree SHA."""
        try:
            response = self._request("GET", f"{self._repo_path(repository)}/git/ref/heads/{branch}", deadline)
        except (GitHubAPIError, GitHubTransportError) as e:
            raise RepositoryLookupFailed(f"get branch ref heads/{branch}", e) from e

        commit_sha = _sha(response.json(), "object", "sha")
        if not commit_sha:
            raise RepositoryLookupFailed(f"get branch ref heads/{branch}", "ref has empty commit sha")

        try:
            response = self._request("GET", f"{self._repo_path(repository)}/git/commits/{commit_sha}", deadline)
        except (GitHubAPIError, GitHubTransportError) as e:
            raise RepositoryLookupFailed("get base commit", e, sha=commit_sha) from e

        tree_sha = _sha(response.json(), "tree", "sha")
        if not tree_sha:
            raise RepositoryLookupFailed("get base commit", "commit has empty tree sha", sha=commit_sha)

        return commit_sha, tree_sha

    def _create_blob(self, repository: RepositoryRef, content: bytes, deadline: Optional[Deadline]) -> str:
        try:
            response = self._request(
                "POST",
                f"{self._repo_path(repository)}/git/blobs",
                deadline,
                json={"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"},
            )
        except (GitHubAPIError, GitHubTransportError) as e:
            raise BlobCreateFailed("create blob", e) from e

        blob_sha = _sha(response.json(), "sha")
        if not blob_sha:
            raise BlobCreateFailed("create blob", "created blob has empty sha")
        return blob_sha

    def _create_tree(
        self,
        repository: RepositoryRef,
        path: str,
        base_tree_sha: str,
        blob_sha: str,
        deadline: Optional[Deadline],
    ) -> str:
        try:
            response = self._request(
                "POST",
                f"{self._repo_path(repository)}/git/trees",
                deadline,
                json={
                    "base_tree": base_tree_sha,
                    "tree": [
                        {"path": path, "mode": FILE_MODE_REGULAR, "type": TREE_ENTRY_BLOB, "sha": blob_sha},
                    ],
                },
            )
        except (GitHubAPIError, GitHubTransportError) as e:
            raise TreeCreateFailed("create tree on base tree", e, sha=base_tree_sha) from e

        tree_sha = _sha(response.json(), "sha")
        if not tree_sha:
            raise TreeCreateFailed("create tree on base tree", "created tree has empty sha", sha=base_tree_sha)
        return tree_sha

    def _create_commit(
        self,
        repository: RepositoryRef,
        message: str,
        tree_sha: str,
        parent_sha: str,
        deadline: Optional[Deadline],
    ) -> str:
        try:
            response = self._request(
                "POST",
                f"{self._repo_path(repository)}/git/commits",
                deadline,
                json={"message": message, "tree": tree_sha, "parents": [parent_sha]},
            )
        except (GitHubAPIError, GitHubTransportError) as e:
            raise CommitCreateFailed("create commit for tree", e, sha=tree_sha) from e

        commit_sha = _sha(response.json(), "sha")
        if not commit_sha:
            raise CommitCreateFailed("create commit for tree", "created commit has empty sha", sha=tree_sha)
        return commit_sha

    def _force_update_ref(
        self,
        repository: RepositoryRef,
        branch: str,
        commit_sha: str,
        deadline: Optional[Deadline],
    ) -> None:
        self._request(
            "PATCH",
            f"{self._repo_path(repository)}/git/refs/heads/{branch}",
            deadline,
            json={"sha": commit_sha, "force": True},
        )

    def _update_head_ref(
        self,
        repository: RepositoryRef,
        branch: str,
        commit_sha: str,
        deadline: Optional[Deadline],
    ) -> bool:
        """Force-update the head ref, creating it when absent.

        Returns:
            True if the ref was created, False if an existing ref was moved
        """
        try:
            self._force_update_ref(repository, branch, commit_sha, deadline)
            return False
        except GitHubAPIError as e:
            if not (e.is_not_found or e.is_reference_missing):
                raise RefUpdateFailed(f"force update ref heads/{branch}", e, sha=commit_sha) from e
        except GitHubTransportError as e:
            raise RefUpdateFailed(f"force update ref heads/{branch}", e, sha=commit_sha) from e

        try:
            self._request(
                "POST",
                f"{self._repo_path(repository)}/git/refs",
                deadline,
                json={"ref": f"refs/heads/{branch}", "sha": commit_sha},
            )
            logger.info(f"Created branch {branch}", extra={"repository": str(repository), "head_branch": branch})
            return True
        except GitHubTransportError as e:
            raise RefUpdateFailed(f"create ref heads/{branch}", e, sha=commit_sha) from e
        except GitHubAPIError as create_error:
            logger.warning(
                f"Creating {branch} failed, retrying force update once: {create_error}",
                extra={"repository": str(repository), "head_branch": branch},
            )
            # Another run may have created the ref after our first update attempt.
            try:
                self._force_update_ref(repository, branch, commit_sha, deadline)
                return False
            except (GitHubAPIError, GitHubTransportError) as retry_error:
                raise RefUpdateFailed(
                    f"create ref heads/{branch}",
                    f"{create_error} (retry update failed: {retry_error})",
                    sha=commit_sha,
                    retry_error=retry_error,
                ) from create_error
