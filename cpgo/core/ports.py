"""Capability interfaces the orchestrator depends on."""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from .deadline import Deadline
from .types import PullRequest, ReadFileResult, RepositoryRef, UpsertFileResult


class ProfileFetcher(ABC):
    """Retrieves raw CPU profile data from a source endpoint."""
    @abstractmethod
    def fetch_cpu_profile(
        self,
        url: str,
        seconds: int,
        headers: Optional[Dict[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> bytes: ...


class ProfileValidator(ABC):
    """Rejects malformed or unusable profile bytes."""
    @abstractmethod
    def validate_cpu_profile(self, raw: bytes) -> None: ...


class BranchWriter(ABC):
    """Reads and mutates repository contents through a branch workflow."""
    @abstractmethod
    def default_branch(self, repository: RepositoryRef, deadline: Optional[Deadline] = None) -> str: ...

    @abstractmethod
    def read_file(
        self,
        repository: RepositoryRef,
        branch: str,
        path: str,
        deadline: Optional[Deadline] = None,
    ) -> ReadFileResult: ...

    @abstractmethod
    def upsert_file_and_force_branch(
        self,
        repository: RepositoryRef,
        base_branch: str,
        head_branch: str,
        path: str,
        content: bytes,
        commit_message: str,
        deadline: Optional[Deadline] = None,
    ) -> UpsertFileResult: ...


class PullRequestService(ABC):
    """Finds and opens pull requests for the automation branch."""
    @abstractmethod
    def find_open_by_head(
        self,
        repository: RepositoryRef,
        base_branch: str,
        head_branch: str,
        deadline: Optional[Deadline] = None,
    ) -> Optional[PullRequest]: ...

    @abstractmethod
    def create(
        self,
        repository: RepositoryRef,
        base_branch: str,
        head_branch: str,
        title: str,
        body: str,
        deadline: Optional[Deadline] = None,
    ) -> PullRequest: ...
