"""Session store backed by files in a GitHub repository."""

import base64
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..exceptions import BlobNotFoundError, StorageError, VersionConflictError
from .base import SessionStore, StoredBlob

logger = logging.getLogger(__name__)


class GitHubSessionStore(SessionStore):
    """
    Blobs stored as repository files through the GitHub contents API.

    Version tokens are the git blob shas GitHub returns, so conditional
    writes map directly onto the API's ``sha`` parameter.
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        branch: Optional[str] = None,
        api_url: str = "https://api.github.com",
        committer_message: str = "Update session store",
    ) -> None:
        """
        Initialize GitHub store.

        Args:
            token: Personal access token with contents write access
            owner: Repository owner
            repo: Repository name
            branch: Branch to read and write (repository default if omitted)
            api_url: API base URL
            committer_message: Commit message prefix
        """
        if not owner or not repo:
            raise ValueError("GitHub owner and repo are required")

        self.api_url = api_url.rstrip("/")
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.committer_message = committer_message
        self._token = token
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session is created."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _contents_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{path}".rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = self._contents_url(path)
        params = {"ref": self.branch} if self.branch and method == "GET" else None
        logger.debug(f"{method} {url}")

        try:
            session = await self._ensure_session()
            async with session.request(
                method, url, json=body, params=params, headers=self._get_headers()
            ) as response:
                if response.status == 404:
                    raise BlobNotFoundError(f"Not found: {path}")
                if response.status in (409, 422):
                    text = await response.text()
                    raise VersionConflictError(f"Version conflict on {path}: {text}")
                if response.status >= 400:
                    text = await response.text()
                    raise StorageError(
                        f"GitHub {method} {path} failed ({response.status}): {text}"
                    )
                return await response.json(content_type=None)

        except aiohttp.ClientError as e:
            logger.error(f"GitHub {method} request failed: {e}")
            raise StorageError(f"Request failed: {e}") from e

    async def _current_sha(self, key: str) -> Optional[str]:
        try:
            data = await self._request("GET", key)
        except BlobNotFoundError:
            return None
        if isinstance(data, list):
            raise StorageError(f"{key} is a directory")
        return data.get("sha")

    async def put(self, key: str, data: bytes, if_version: Optional[str] = None) -> str:
        sha = if_version if if_version is not None else await self._current_sha(key)
        body: Dict[str, Any] = {
            "message": f"{self.committer_message}: {key}",
            "content": base64.b64encode(data).decode(),
        }
        if sha:
            body["sha"] = sha
        if self.branch:
            body["branch"] = self.branch

        result = await self._request("PUT", key, body)
        version = (result.get("content") or {}).get("sha")
        if not version:
            raise StorageError(f"GitHub did not return a sha for {key}")
        logger.debug(f"Stored {key} at {version}")
        return version

    async def get(self, key: str) -> StoredBlob:
        data = await self._request("GET", key)
        if isinstance(data, list):
            raise BlobNotFoundError(f"{key} is a directory")

        try:
            content = base64.b64decode(data.get("content") or "")
        except (ValueError, TypeError) as e:
            raise StorageError(f"Undecodable content for {key}: {e}") from e
        return StoredBlob(key=key, data=content, version=data["sha"])

    async def delete(self, key: str, if_version: Optional[str] = None) -> None:
        sha = if_version if if_version is not None else await self._current_sha(key)
        if sha is None:
            return

        body: Dict[str, Any] = {
            "message": f"Delete {key}",
            "sha": sha,
        }
        if self.branch:
            body["branch"] = self.branch

        try:
            await self._request("DELETE", key, body)
        except BlobNotFoundError:
            return
        logger.debug(f"Deleted {key}")

    async def list(self, prefix: str = "") -> List[str]:
        directory = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        try:
            entries = await self._request("GET", directory)
        except BlobNotFoundError:
            return []
        if not isinstance(entries, list):
            return []

        return sorted(
            entry["path"]
            for entry in entries
            if entry.get("type") == "file" and entry.get("path", "").startswith(prefix)
        )

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("GitHub store session closed")
