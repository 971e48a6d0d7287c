"""Fetch release metadata and artifacts from the GitHub releases API."""
from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import requests

from .. import __version__

_CHUNK_SIZE = 64 * 1024
_RETRY_DELAY = 1.0


class ReleaseError(RuntimeError):
    """Raised when release metadata is unusable."""


class NetworkFailure(ReleaseError):
    """Raised when the release source cannot be reached after retrying."""


@dataclass(frozen=True, slots=True)
class ReleaseAsset:
    """Downloadable file attached to a release."""

    name: str
    url: str
    size: int | None = None


@dataclass(frozen=True, slots=True)
class Release:
    """Metadata describing a published release."""

    tag: str
    assets: tuple[ReleaseAsset, ...]
    tarball_url: str | None = None

    def asset(self, suffix: str = "") -> ReleaseAsset:
        """Return the first asset whose name ends with *suffix*."""
        for asset in self.assets:
            if asset.name.endswith(suffix):
                return asset
        raise ReleaseError(f"Release {self.tag} has no asset matching '*{suffix}'.")


class ReleaseProvider:
    """Query ``/repos/<repo>/releases/latest`` and download assets."""

    def __init__(
        self,
        *,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        retries: int = 1,
        session: requests.Session | None = None,
        retry_delay: float = _RETRY_DELAY,
    ) -> None:
        """Configure the endpoint, timeout and retry budget."""
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.retries = max(0, retries)
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", f"blynkcli/{__version__}")

    def latest(self, repo: str) -> Release:
        """Return the latest release of *repo* (``owner/name``)."""
        url = f"{self.api_url}/repos/{repo}/releases/latest"
        response = self._get(url, headers={"Accept": "application/vnd.github+json"})
        try:
            payload = response.json()
        except ValueError as exc:
            raise ReleaseError(f"Malformed release metadata from {url}: {exc}") from exc
        finally:
            response.close()
        return _parse_release(payload, url)

    def download(self, asset: ReleaseAsset, destination: Path) -> Path:
        """Stream *asset* to *destination*, replacing it only once complete."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
            suffix=".part",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                response = self._get(asset.url, stream=True)
                try:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
                except requests.RequestException as exc:
                    raise NetworkFailure(f"Download of {asset.name} interrupted: {exc}") from exc
                finally:
                    response.close()
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return destination

    # ------------------------------------------------------------------
    def _get(
        self,
        url: str,
        *,
        stream: bool = False,
        headers: Mapping[str, str] | None = None,
    ) -> requests.Response:
        attempts = self.retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.get(
                    url,
                    timeout=self.timeout,
                    stream=stream,
                    headers=dict(headers or {}),
                )
                response.raise_for_status()
                return response
            except requests.RequestException as exc:
                last_error = exc
                if attempt < attempts:
                    time.sleep(self.retry_delay)
        raise NetworkFailure(f"GET {url} failed after {attempts} attempt(s): {last_error}")


def _parse_release(payload: object, url: str) -> Release:
    if not isinstance(payload, Mapping):
        raise ReleaseError(f"Release metadata from {url} must be a JSON object.")
    tag = str(payload.get("tag_name") or "").strip()
    if not tag:
        raise ReleaseError(f"Release metadata from {url} is missing 'tag_name'.")
    assets: list[ReleaseAsset] = []
    raw_assets = payload.get("assets")
    if isinstance(raw_assets, list):
        for item in raw_assets:
            if not isinstance(item, Mapping):
                continue
            name = str(item.get("name") or "").strip()
            download_url = str(item.get("browser_download_url") or "").strip()
            if not name or not download_url:
                continue
            size = item.get("size")
            assets.append(
                ReleaseAsset(
                    name=name,
                    url=download_url,
                    size=size if isinstance(size, int) else None,
                )
            )
    tarball = payload.get("tarball_url")
    return Release(
        tag=tag,
        assets=tuple(assets),
        tarball_url=str(tarball) if tarball else None,
    )


__all__ = ["NetworkFailure", "Release", "ReleaseAsset", "ReleaseError", "ReleaseProvider"]
