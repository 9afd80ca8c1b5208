"""Tests for run request normalization and core models."""

import pytest
from pydantic import ValidationError

from cpgo.core.errors import InvalidRequest
from cpgo.core.types import (
    DEFAULT_COMMIT_MESSAGE,
    DEFAULT_HEAD_BRANCH,
    DEFAULT_MANAGED_BY_MARKER,
    DEFAULT_PR_BODY,
    DEFAULT_PR_TITLE,
    DEFAULT_PROFILE_SECONDS,
    PullRequest,
    RepositoryRef,
    RunRequest,
)


def make_request(url="http://svc:6060/debug/pprof/profile", **repository):
    repo = {"owner": "acme", "name": "svc", "artifact_path": "default.pgo"}
    repo.update(repository)
    return RunRequest(profile={"url": url}, repository=repo)


class TestNormalized:
    def test_applies_defaults(self):
        normalized = make_request().normalized()

        assert normalized.profile.seconds == DEFAULT_PROFILE_SECONDS
        assert normalized.repository.head_branch == DEFAULT_HEAD_BRANCH
        assert normalized.repository.base_branch == ""
        assert normalized.pull_request.managed_by_marker == DEFAULT_MANAGED_BY_MARKER
        assert normalized.pull_request.title == DEFAULT_PR_TITLE
        assert normalized.pull_request.body == DEFAULT_PR_BODY
        assert normalized.commit.message == DEFAULT_COMMIT_MESSAGE

    def test_keeps_explicit_values(self):
        request = make_request(head_branch="pgo", base_branch="develop")
        request.profile.seconds = 5
        request.pull_request.title = "custom"
        normalized = request.normalized()

        assert normalized.profile.seconds == 5
        assert normalized.repository.head_branch == "pgo"
        assert normalized.repository.base_branch == "develop"
        assert normalized.pull_request.title == "custom"

    def test_negative_seconds_use_default(self):
        request = make_request()
        request.profile.seconds = -1
        assert request.normalized().profile.seconds == DEFAULT_PROFILE_SECONDS

    def test_does_not_mutate_original(self):
        request = make_request()
        request.normalized()
        assert request.repository.head_branch == ""
        assert request.profile.seconds == 0

    @pytest.mark.parametrize("url", [None, "", "   ", "/debug/pprof/profile", "svc:6060", "http://"])
    def test_rejects_bad_profile_url(self, url):
        with pytest.raises(InvalidRequest) as exc_info:
            make_request(url=url).normalized()
        assert exc_info.value.field == "profile.url"

    @pytest.mark.parametrize("field", ["owner", "name", "artifact_path"])
    def test_rejects_blank_repository_fields(self, field):
        with pytest.raises(InvalidRequest) as exc_info:
            make_request(**{field: "  "}).normalized()
        assert exc_info.value.field == f"repository.{field}"


class TestRepositoryRef:
    def test_is_immutable(self):
        ref = RepositoryRef(owner="acme", name="svc")
        with pytest.raises(ValidationError):
            ref.owner = "other"

    def test_str(self):
        assert str(RepositoryRef(owner="acme", name="svc")) == "acme/svc"

    def test_validate_ref(self):
        with pytest.raises(InvalidRequest, match="owner"):
            RepositoryRef(owner=" ", name="svc").validate_ref()


def test_pull_request_management_marker():
    pr = PullRequest(number=1, body="refresh\n\n<!-- managed-by:cpgo -->")
    assert pr.is_managed_by(DEFAULT_MANAGED_BY_MARKER)
    assert not PullRequest(number=2, body="hand written").is_managed_by(DEFAULT_MANAGED_BY_MARKER)
