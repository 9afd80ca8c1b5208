"""Tests for the refresh orchestrator."""

from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from cpgo.core.deadline import Deadline
from cpgo.core.errors import (
    ArtifactReadFailed,
    BranchResolutionFailed,
    BranchUpdateFailed,
    DeadlineExceeded,
    EmptyDefaultBranch,
    FetchFailed,
    InvalidProfile,
    InvalidRequest,
    PullRequestCreateFailed,
    PullRequestLookupFailed,
    TreeTruncated,
    UnmanagedPullRequest,
)
from cpgo.core.ports import BranchWriter, ProfileFetcher, ProfileValidator, PullRequestService
from cpgo.core.types import (
    DEFAULT_MANAGED_BY_MARKER,
    PullRequest,
    ReadFileResult,
    RunRequest,
    UpsertFileResult,
)
from cpgo.services.orchestrator import RefreshOrchestrator, append_marker

MARKER = DEFAULT_MANAGED_BY_MARKER


class StaticFetcher(ProfileFetcher):
    def __init__(self, payload: bytes = b"new", error: Optional[Exception] = None):
        self.payload = payload
        self.error = error
        self.calls = []

    def fetch_cpu_profile(self, url, seconds, headers=None, deadline=None):
        self.calls.append((url, seconds, headers))
        if self.error is not None:
            raise self.error
        return self.payload


class AcceptingValidator(ProfileValidator):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error

    def validate_cpu_profile(self, raw):
        if self.error is not None:
            raise self.error


class FakeRepository(BranchWriter, PullRequestService):
    """In-memory repository with branches of files and open pull requests."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None, default: str = "main"):
        self.default = default
        self.branches: Dict[str, Dict[str, bytes]] = {default: dict(files or {})}
        self.pulls: List[PullRequest] = []
        self.heads: Dict[int, str] = {}
        self.upserts = 0
        self.creates = 0
        self.commits = 0

    def default_branch(self, repository, deadline=None):
        return self.default

    def read_file(self, repository, branch, path, deadline=None):
        files = self.branches.get(branch, {})
        if path not in files:
            return ReadFileResult(exists=False)
        return ReadFileResult(content=files[path], exists=True)

    def upsert_file_and_force_branch(self, repository, base_branch, head_branch, path, content,
                                     commit_message, deadline=None):
        self.upserts += 1
        self.commits += 1
        created = head_branch not in self.branches
        tree = dict(self.branches[base_branch])
        tree[path] = content
        self.branches[head_branch] = tree
        return UpsertFileResult(commit_sha=f"commit{self.commits}", branch_created=created)

    def find_open_by_head(self, repository, base_branch, head_branch, deadline=None):
        for pr in self.pulls:
            if self.heads[pr.number] == head_branch:
                return pr
        return None

    def create(self, repository, base_branch, head_branch, title, body, deadline=None):
        self.creates += 1
        pr = PullRequest(number=100 + len(self.pulls), title=title, body=body, url="https://example/pr")
        self.pulls.append(pr)
        self.heads[pr.number] = head_branch
        return pr

    def open_manual_pull_request(self, head_branch: str, body: str) -> PullRequest:
        pr = PullRequest(number=7, title="manual", body=body)
        self.pulls.append(pr)
        self.heads[pr.number] = head_branch
        return pr


def make_request(**repository) -> RunRequest:
    repo = {"owner": "acme", "name": "svc", "artifact_path": "default.pgo"}
    repo.update(repository)
    return RunRequest(
        profile={"url": "http://svc.internal:6060/debug/pprof/profile"},
        repository=repo,
    )


def make_orchestrator(repo, payload=b"new", fetcher=None, validator=None):
    return RefreshOrchestrator(
        profile_fetcher=fetcher or StaticFetcher(payload),
        profile_validator=validator or AcceptingValidator(),
        branch_writer=repo,
        pull_requests=repo,
    )


class TestAppendMarker:
    def test_appends_after_blank_line(self):
        assert append_marker("Automated refresh.\n\n", MARKER) == f"Automated refresh.\n\n{MARKER}"

    def test_blank_body_becomes_marker(self):
        assert append_marker("  ", MARKER) == MARKER

    def test_idempotent(self):
        once = append_marker("body", MARKER)
        assert append_marker(once, MARKER) == once


class TestRefreshOrchestrator:
    """Tests for the run state machine."""

    def test_requires_collaborators(self):
        repo = FakeRepository()
        with pytest.raises(ValueError, match="profile fetcher"):
            RefreshOrchestrator(None, AcceptingValidator(), repo, repo)
        with pytest.raises(ValueError, match="pull request service"):
            RefreshOrchestrator(StaticFetcher(), AcceptingValidator(), repo, None)

    def test_creates_pull_request_on_change(self):
        """Base has "old", profile is "new", no PR open."""
        repo = FakeRepository({"default.pgo": b"old", "main.go": b"package main"})
        result = make_orchestrator(repo).run(make_request())

        assert result.profile_changed is True
        assert result.pull_request_created is True
        assert result.noop is False
        assert result.commit_sha == "commit1"
        assert result.base_branch == "main"
        assert result.head_branch == "cpgo"
        assert result.pull_request_number == 100

        head_tree = repo.branches["cpgo"]
        base_tree = repo.branches["main"]
        assert head_tree["default.pgo"] == b"new"
        assert {k for k in head_tree if head_tree[k] != base_tree.get(k)} == {"default.pgo"}

        body = repo.pulls[0].body
        assert body.count(MARKER) == 1
        assert body.startswith("Automated PGO profile refresh.")

    def test_marker_appended_once_to_custom_body(self):
        repo = FakeRepository()
        request = make_request()
        request.pull_request.body = f"Refresh\n\n{MARKER}"
        make_orchestrator(repo).run(request)
        assert repo.pulls[0].body == f"Refresh\n\n{MARKER}"

    def test_noop_when_profile_matches(self):
        repo = FakeRepository({"default.pgo": b"same"})
        result = make_orchestrator(repo, payload=b"same").run(make_request())

        assert result.noop is True
        assert result.profile_changed is False
        assert result.commit_sha == ""
        assert result.pull_request_number == 0
        assert repo.upserts == 0
        assert repo.creates == 0

    def test_idempotent_across_runs(self):
        """Once merged, a rerun with the same profile writes nothing."""
        repo = FakeRepository({"default.pgo": b"old"})
        orchestrator = make_orchestrator(repo)

        first = orchestrator.run(make_request())
        assert first.profile_changed is True

        # merge the head branch into main
        repo.branches["main"] = dict(repo.branches["cpgo"])
        second = orchestrator.run(make_request())

        assert second.noop is True
        assert second.pull_request_number == first.pull_request_number
        assert repo.upserts == 1
        assert repo.creates == 1

    def test_reuses_managed_pull_request(self):
        repo = FakeRepository({"default.pgo": b"old"})
        existing = repo.open_manual_pull_request("cpgo", f"Automated.\n\n{MARKER}")

        result = make_orchestrator(repo).run(make_request())

        assert result.profile_changed is True
        assert result.pull_request_created is False
        assert result.pull_request_number == existing.number
        assert repo.upserts == 1
        assert repo.creates == 0

    def test_blocks_unmanaged_pull_request(self):
        repo = FakeRepository({"default.pgo": b"old"})
        repo.open_manual_pull_request("cpgo", "I am working on this branch by hand")

        with pytest.raises(UnmanagedPullRequest) as exc_info:
            make_orchestrator(repo).run(make_request())

        assert exc_info.value.pull_request.number == 7
        assert repo.upserts == 0
        assert repo.creates == 0

    def test_missing_artifact_is_written(self):
        repo = FakeRepository({})
        result = make_orchestrator(repo).run(make_request())
        assert result.profile_changed is True
        assert repo.branches["cpgo"]["default.pgo"] == b"new"

    def test_configured_base_branch_skips_default_lookup(self):
        repo = FakeRepository({"default.pgo": b"old"})
        repo.branches["release"] = {"default.pgo": b"new"}
        repo.default_branch = Mock(side_effect=AssertionError("should not be called"))

        result = make_orchestrator(repo).run(make_request(base_branch="release"))

        assert result.base_branch == "release"
        assert result.noop is True

    def test_invalid_request(self):
        repo = FakeRepository()
        fetcher = StaticFetcher()
        with pytest.raises(InvalidRequest):
            make_orchestrator(repo, fetcher=fetcher).run(make_request(owner=" "))
        assert fetcher.calls == []

    def test_fetch_failure_is_wrapped(self):
        repo = FakeRepository()
        fetcher = StaticFetcher(error=ConnectionError("refused"))
        with pytest.raises(FetchFailed, match="fetch cpu profile: refused"):
            make_orchestrator(repo, fetcher=fetcher).run(make_request())

    def test_fetch_failed_is_not_double_wrapped(self):
        repo = FakeRepository()
        fetcher = StaticFetcher(error=FetchFailed("fetch profile: unexpected status 500"))
        with pytest.raises(FetchFailed) as exc_info:
            make_orchestrator(repo, fetcher=fetcher).run(make_request())
        assert str(exc_info.value) == "fetch profile: unexpected status 500"

    def test_invalid_profile_stops_before_repository(self):
        repo = FakeRepository()
        repo.find_open_by_head = Mock()
        validator = AcceptingValidator(error=InvalidProfile("cpu profile has no samples"))

        with pytest.raises(InvalidProfile):
            make_orchestrator(repo, validator=validator).run(make_request())
        repo.find_open_by_head.assert_not_called()

    def test_blank_default_branch(self):
        repo = FakeRepository()
        repo.default_branch = Mock(return_value="  ")
        with pytest.raises(BranchResolutionFailed):
            make_orchestrator(repo).run(make_request())

    def test_default_branch_error_is_wrapped(self):
        repo = FakeRepository()
        repo.default_branch = Mock(side_effect=EmptyDefaultBranch("empty"))
        with pytest.raises(BranchResolutionFailed) as exc_info:
            make_orchestrator(repo).run(make_request())
        assert isinstance(exc_info.value.__cause__, EmptyDefaultBranch)

    def test_lookup_failure_is_wrapped(self):
        repo = FakeRepository()
        repo.find_open_by_head = Mock(side_effect=RuntimeError("boom"))
        with pytest.raises(PullRequestLookupFailed, match="find open pull request"):
            make_orchestrator(repo).run(make_request())

    def test_read_failure_is_wrapped(self):
        repo = FakeRepository()
        repo.read_file = Mock(side_effect=TreeTruncated("tree listing was truncated"))
        with pytest.raises(ArtifactReadFailed) as exc_info:
            make_orchestrator(repo).run(make_request())
        assert isinstance(exc_info.value.__cause__, TreeTruncated)
        assert repo.upserts == 0

    def test_write_failure_creates_no_pull_request(self):
        repo = FakeRepository()
        repo.upsert_file_and_force_branch = Mock(side_effect=RuntimeError("ref update failed"))
        with pytest.raises(BranchUpdateFailed):
            make_orchestrator(repo).run(make_request())
        assert repo.creates == 0

    def test_create_failure_is_wrapped(self):
        repo = FakeRepository()
        repo.create = Mock(side_effect=RuntimeError("validation failed"))
        with pytest.raises(PullRequestCreateFailed, match="create pull request"):
            make_orchestrator(repo).run(make_request())

    def test_expired_deadline_aborts_before_fetch(self):
        repo = FakeRepository()
        fetcher = StaticFetcher()
        deadline = Deadline(0)

        with pytest.raises(DeadlineExceeded):
            make_orchestrator(repo, fetcher=fetcher).run(make_request(), deadline=deadline)
        assert fetcher.calls == []

    def test_cancelled_deadline_aborts_before_write(self):
        repo = FakeRepository({"default.pgo": b"old"})
        deadline = Deadline(60)
        original_read = repo.read_file

        def read_then_cancel(*args, **kwargs):
            deadline.cancel()
            return original_read(*args, **kwargs)

        repo.read_file = read_then_cancel
        with pytest.raises(DeadlineExceeded, match="cancelled"):
            make_orchestrator(repo).run(make_request(), deadline=deadline)
        assert repo.upserts == 0

    def test_deadline_error_from_stage_is_not_wrapped(self):
        repo = FakeRepository()
        repo.read_file = Mock(side_effect=DeadlineExceeded("deadline exceeded during GET"))
        with pytest.raises(DeadlineExceeded):
            make_orchestrator(repo).run(make_request())

    def test_passes_normalized_profile_settings(self):
        repo = FakeRepository()
        fetcher = StaticFetcher()
        request = make_request()
        request.profile.headers = {"Authorization": "Bearer x"}

        make_orchestrator(repo, fetcher=fetcher).run(request)

        assert fetcher.calls == [
            ("http://svc.internal:6060/debug/pprof/profile", 30, {"Authorization": "Bearer x"})
        ]
