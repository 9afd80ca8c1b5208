"""GitHub credential provisioning: personal tokens and GitHub App installations."""

import base64
import json
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..core.deadline import Deadline, request_timeout
from ..core.errors import CredentialError, DeadlineExceeded, InvalidRequest
from ..core.types import RepositoryRef, is_blank
from ..tools.github import API_VERSION, DEFAULT_API_URL, DEFAULT_GITHUB_TIMEOUT, GitHubClient

logger = logging.getLogger(__name__)

# GitHub rejects app JWTs valid for more than ten minutes; backdate iat for clock drift.
JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 9 * 60


def client_from_token(
    token: str,
    api_url: str = DEFAULT_API_URL,
    timeout: float = DEFAULT_GITHUB_TIMEOUT,
) -> GitHubClient:
    """Build a GitHub client authenticated with a personal or workflow token."""
    if is_blank(token):
        raise CredentialError("token is required")
    return GitHubClient(token=token.strip(), api_url=api_url, timeout=timeout)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def app_jwt(app_id: int, private_key_pem: bytes, now: Optional[float] = None) -> str:
    """Sign an RS256 JSON Web Token identifying a GitHub App.

    Args:
        app_id: GitHub App ID (JWT issuer)
        private_key_pem: App private key in PEM format
        now: Current UNIX time (defaults to time.time())

    Returns:
        Compact serialized JWT

    Raises:
        CredentialError: If the key cannot be loaded or is not an RSA key
    """
    issued = int(now if now is not None else time.time())
    try:
        key = serialization.load_pem_private_key(private_key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise CredentialError(f"load github app private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CredentialError("github app private key must be an RSA key")

    header = {"alg": "RS256", "typ": "JWT"}
    payload = {
        "iat": issued - JWT_BACKDATE_SECONDS,
        "exp": issued + JWT_LIFETIME_SECONDS,
        "iss": str(app_id),
    }
    signing_input = ".".join(
        _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8")) for part in (header, payload)
    )
    signature = key.sign(signing_input.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
    return f"{signing_input}.{_b64url(signature)}"


def _mint_installation_token(
    client: httpx.Client,
    api_url: str,
    headers: Dict[str, str],
    repository: RepositoryRef,
    timeout: float,
    deadline: Optional[Deadline],
) -> Tuple[int, str]:
    """Look up the repository installation and exchange the app JWT for its token."""
    installation_path = f"/repos/{repository.owner}/{repository.name}/installation"
    try:
        if deadline is not None:
            deadline.check("look up github app installation")
        response = client.get(
            f"{api_url}{installation_path}",
            headers=headers,
            timeout=request_timeout(deadline, timeout),
        )
        response.raise_for_status()
        installation_id = response.json().get("id")
        if not installation_id:
            raise CredentialError(f"no installation id returned for {repository}")

        if deadline is not None:
            deadline.check("create installation access token")
        response = client.post(
            f"{api_url}/app/installations/{installation_id}/access_tokens",
            headers=headers,
            timeout=request_timeout(deadline, timeout),
        )
        response.raise_for_status()
        token = response.json().get("token")
    except httpx.HTTPStatusError as e:
        raise CredentialError(
            f"github app authentication failed: {e.response.status_code} for {e.request.url}"
        ) from e
    except httpx.TimeoutException as e:
        if deadline is not None and deadline.expired():
            raise DeadlineExceeded("deadline exceeded during github app authentication") from e
        raise CredentialError(f"github app authentication failed: {e}") from e
    except httpx.HTTPError as e:
        raise CredentialError(f"github app authentication failed: {e}") from e

    if is_blank(token):
        raise CredentialError(f"installation {installation_id} returned an empty token")
    return installation_id, token


def client_from_app(
    app_id: int,
    private_key_pem: bytes,
    repository: RepositoryRef,
    api_url: str = DEFAULT_API_URL,
    timeout: float = DEFAULT_GITHUB_TIMEOUT,
    http_client: Optional[httpx.Client] = None,
    clock: Callable[[], float] = time.time,
    deadline: Optional[Deadline] = None,
) -> GitHubClient:
    """Build a GitHub client authenticated as the app installation on a repository.

    Looks up the installation for the repository with an app JWT, then mints
    an installation access token. Both calls are bounded by the run deadline.

    Raises:
        CredentialError: On invalid inputs or any failed GitHub call
        DeadlineExceeded: If the deadline passes before or during the exchange
    """
    if app_id <= 0:
        raise CredentialError("app id must be positive")
    if not private_key_pem:
        raise CredentialError("private key is required")
    try:
        repository.validate_ref()
    except InvalidRequest as e:
        raise CredentialError(str(e)) from e

    api_url = api_url.rstrip("/")
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": API_VERSION,
        "Authorization": f"Bearer {app_jwt(app_id, private_key_pem, now=clock())}",
    }

    if http_client is not None:
        installation_id, token = _mint_installation_token(
            http_client, api_url, headers, repository, timeout, deadline,
        )
    else:
        with httpx.Client(timeout=timeout) as client:
            installation_id, token = _mint_installation_token(
                client, api_url, headers, repository, timeout, deadline,
            )

    logger.info(f"Authenticated as GitHub App {app_id} installation {installation_id}",
                extra={"repository": str(repository)})
    return GitHubClient(token=token, api_url=api_url, timeout=timeout, http_client=http_client)
