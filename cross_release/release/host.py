"""Release host client.

This module handles:
- Looking up or creating the release for a tag
- Uploading one asset under that release
- Treating an already-present asset as a successful upload
- Mapping transport and authentication failures to PublishTransportFailure

The client never retries; retries belong to the CI provider.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_UPLOAD_URL = "https://uploads.github.com"

# Timeout for API requests (seconds)
REQUEST_TIMEOUT = 30

# Timeout for asset uploads (seconds)
UPLOAD_TIMEOUT = 300


class PublishTransportFailure(Exception):
    """Raised when the release host cannot be reached or rejects the request."""

    def __init__(
        self,
        message: str,
        code: str = "http_error",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class UploadOutcome(str, Enum):
    """Result of an accepted upload."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class ReleaseHost(Protocol):
    """Anything able to attach a file to a tagged release."""

    def upload(
        self,
        tag: str,
        file_name: str,
        content: bytes,
        credential: SecretStr,
    ) -> UploadOutcome:
        """Upload content as file_name under the release for tag."""
        ...


def _is_duplicate_asset(response: httpx.Response) -> bool:
    if response.status_code != 422:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    errors = body.get("errors", []) if isinstance(body, dict) else []
    if not isinstance(errors, list):
        return False
    return any(e.get("code") == "already_exists" for e in errors if isinstance(e, dict))


class GitHubReleaseHost:
    """Release host backed by the GitHub releases API.

    Args:
        repo: Repository as 'owner/name'.
        client: HTTPX client instance (one is created if not given).
        api_url: REST API base URL.
        upload_url: Asset upload base URL.
        upload_timeout: Timeout for one asset upload in seconds.
    """

    def __init__(
        self,
        repo: str,
        client: httpx.Client | None = None,
        api_url: str = GITHUB_API_URL,
        upload_url: str = GITHUB_UPLOAD_URL,
        upload_timeout: float = UPLOAD_TIMEOUT,
    ) -> None:
        self.repo = repo
        self.client = client or httpx.Client()
        self.api_url = api_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.upload_timeout = upload_timeout

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self.client.close()

    def __enter__(self) -> GitHubReleaseHost:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _headers(credential: SecretStr) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.get_secret_value()}",
            "Accept": "application/vnd.github+json",
        }

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise PublishTransportFailure(
                f"Timeout contacting release host: {method} {url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise PublishTransportFailure(
                f"Network error contacting release host: {e}", code="network_error"
            ) from e

        if response.status_code in (401, 403):
            raise PublishTransportFailure(
                f"Release host rejected credential: {response.status_code}",
                code="auth_error",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PublishTransportFailure(
                f"HTTP error {action}: {e.response.status_code} "
                f"{e.response.reason_phrase}",
                code="http_error",
                status_code=e.response.status_code,
            ) from e

    def _release_id(self, tag: str, credential: SecretStr) -> int:
        headers = self._headers(credential)
        by_tag = f"{self.api_url}/repos/{self.repo}/releases/tags/{tag}"

        response = self._send("GET", by_tag, headers=headers, timeout=REQUEST_TIMEOUT)
        if response.status_code == 404:
            logger.info("Creating release for tag %s", tag)
            response = self._send(
                "POST",
                f"{self.api_url}/repos/{self.repo}/releases",
                headers=headers,
                json={"tag_name": tag, "name": tag},
                timeout=REQUEST_TIMEOUT,
            )
            # A sibling leg created it first
            if response.status_code == 422:
                response = self._send(
                    "GET", by_tag, headers=headers, timeout=REQUEST_TIMEOUT
                )

        self._raise_for_status(response, f"resolving release {tag}")
        try:
            return int(response.json()["id"])
        except (ValueError, TypeError, KeyError) as e:
            raise PublishTransportFailure(
                f"Malformed release response for {tag}: {e}",
                code="http_error",
                status_code=response.status_code,
            ) from e

    def upload(
        self,
        tag: str,
        file_name: str,
        content: bytes,
        credential: SecretStr,
    ) -> UploadOutcome:
        """Attach an asset to the release for a tag.

        Args:
            tag: Release tag.
            file_name: Asset name.
            content: Asset bytes.
            credential: Release host token.

        Returns:
            UploadOutcome.CREATED, or ALREADY_EXISTS if the asset is present.

        Raises:
            PublishTransportFailure: On network, authentication or HTTP errors.
        """
        release_id = self._release_id(tag, credential)

        headers = self._headers(credential)
        headers["Content-Type"] = "application/octet-stream"
        response = self._send(
            "POST",
            f"{self.upload_url}/repos/{self.repo}/releases/{release_id}/assets",
            params={"name": file_name},
            headers=headers,
            content=content,
            timeout=self.upload_timeout,
        )

        if _is_duplicate_asset(response):
            logger.info("Asset %s already attached to %s", file_name, tag)
            return UploadOutcome.ALREADY_EXISTS

        self._raise_for_status(response, f"uploading {file_name}")
        logger.info("Uploaded %s to release %s (%d bytes)", file_name, tag, len(content))
        return UploadOutcome.CREATED


__all__ = [
    "GITHUB_API_URL",
    "GITHUB_UPLOAD_URL",
    "GitHubReleaseHost",
    "PublishTransportFailure",
    "ReleaseHost",
    "UploadOutcome",
]
