"""
Latest-release lookup for the public download page.

The release endpoint is best effort: every failure still leaves the download
offered, together with a short error code the page can explain.
"""
import logging
import os
import re
from datetime import datetime
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

RELEASES_REPO = os.getenv("RELEASES_REPO", "gauciv/triji-app")
APK_URL = os.getenv(
    "APK_URL",
    "https://github.com/gauciv/triji-app/releases/download/v1.3.1/triji-app-v1-3-1.apk",
)
FETCH_TIMEOUT = float(os.getenv("RELEASE_FETCH_TIMEOUT", "10"))
MAX_RETRIES = 3

MAX_NOTES = 10
MAX_BODY_CHARS = 5000

_LINK_ONLY = re.compile(r"^\[.*?\]\(http.*?\)$")
_LIST_MARKER = re.compile(r"^[\s\-*+]+")
_NUMBERED = re.compile(r"^\d+\.\s*")
_LEADING_EMOJI = re.compile("^[\U0001F300-\U0001F9FF]\\s*")
_MD_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_URL = re.compile(r"https?://[^\s)]+")
_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`]*`")
_HTML_TAG = re.compile(r"<[^>]*>")
_EMPTY_PARENS = re.compile(r"\(\s*\)")
_DATE_PARENS = re.compile(r"\(\d{4}-\d{2}-\d{2}\)")


class ReleaseInfo(BaseModel):
    version: str
    notes: List[str] = []
    published_at: Optional[datetime] = None


class ReleaseStatus(BaseModel):
    info: Optional[ReleaseInfo] = None
    error: Optional[str] = None  # no-releases | rate-limit | timeout | offline | fetch-failed
    download_url: str = APK_URL
    can_download: bool = True


def sanitize_version(version: Any) -> str:
    if not version or not isinstance(version, str):
        return "Latest Version"
    return re.sub(r"[^a-zA-Z0-9.-]", "", version)[:20]


def _clean_line(line: str) -> Optional[str]:
    cleaned = line.strip()
    if cleaned.startswith("#") or _LINK_ONLY.match(cleaned):
        return None
    cleaned = _NUMBERED.sub("", _LIST_MARKER.sub("", cleaned)).strip()
    cleaned = _LEADING_EMOJI.sub("", cleaned).strip()
    cleaned = _MD_LINK.sub(r"\1", cleaned)
    cleaned = _URL.sub("", cleaned)
    cleaned = _CODE_BLOCK.sub("", cleaned)
    cleaned = _INLINE_CODE.sub("", cleaned)
    cleaned = _HTML_TAG.sub("", cleaned)
    cleaned = _EMPTY_PARENS.sub("", cleaned).strip()
    cleaned = _DATE_PARENS.sub("", cleaned).strip()
    if 3 < len(cleaned) < 200 and not cleaned.startswith(("http:", "https:")):
        return cleaned
    return None


def parse_release_notes(body: Any) -> List[str]:
    """Plain-text highlights from a markdown release body."""
    if not body or not isinstance(body, str):
        return []
    notes: List[str] = []
    for line in body[:MAX_BODY_CHARS].split("\n"):
        if len(notes) >= MAX_NOTES:
            break
        if not line.strip():
            continue
        cleaned = _clean_line(line)
        if cleaned:
            notes.append(cleaned)
    return notes


def _published(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


async def fetch_latest_release(
    repo: str = RELEASES_REPO,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = FETCH_TIMEOUT,
) -> ReleaseStatus:
    url = f"https://api.github.com/repos/{repo}/releases/latest"
    headers = {"Accept": "application/vnd.github.v3+json"}
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.get(url, headers=headers, timeout=timeout)
        if response.status_code == 404:
            return ReleaseStatus(error="no-releases")
        if response.status_code == 403:
            return ReleaseStatus(error="rate-limit")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            logger.error("Unexpected release payload from %s", url)
            return ReleaseStatus(error="fetch-failed")
        return ReleaseStatus(
            info=ReleaseInfo(
                version=sanitize_version(data.get("tag_name")),
                notes=parse_release_notes(data.get("body")),
                published_at=_published(data.get("published_at")),
            )
        )
    except httpx.TimeoutException:
        logger.warning("Timed out fetching release info from %s", url)
        return ReleaseStatus(error="timeout")
    except httpx.ConnectError as exc:
        logger.warning("Release endpoint unreachable: %s", exc)
        return ReleaseStatus(error="offline")
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Error fetching release info: %s", exc)
        return ReleaseStatus(error="fetch-failed")
    finally:
        if owns_client:
            await client.aclose()


async def check_download(url: str = APK_URL, client: Optional[httpx.AsyncClient] = None) -> Optional[str]:
    """HEAD-check the download. Returns "apk-not-found" only when the host says so."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=FETCH_TIMEOUT, follow_redirects=True)
    try:
        response = await client.head(url)
    except httpx.HTTPError as exc:
        logger.warning("HEAD check failed for %s, offering direct download: %s", url, exc)
        return None
    finally:
        if owns_client:
            await client.aclose()
    if not response.is_success:
        return "apk-not-found"
    return None


class DownloadPage:
    """Release info with a bounded number of manual retries."""

    def __init__(self, repo: str = RELEASES_REPO, client: Optional[httpx.AsyncClient] = None):
        self.repo = repo
        self.client = client
        self.retry_count = 0
        self.status: Optional[ReleaseStatus] = None

    @property
    def can_retry(self) -> bool:
        return self.status is not None and self.status.error is not None and self.retry_count < MAX_RETRIES

    async def load(self) -> ReleaseStatus:
        self.status = await fetch_latest_release(self.repo, client=self.client)
        return self.status

    async def retry(self) -> ReleaseStatus:
        if not self.can_retry:
            return self.status
        self.retry_count += 1
        return await self.load()
