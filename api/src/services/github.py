"""
GitHub service for webhook validation and build file retrieval.
"""

import hmac
import hashlib
import logging
from typing import Optional, Dict, Any, Tuple

import httpx

from api.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

BUILD_FILE_PATHS = ("cloudbuild.yaml", "cloudbuild.yml", "buildgraph.yaml")

def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Verify GitHub webhook signature."""
    secret = settings.github_webhook_secret if secret is None else secret
    if not secret:
        # Skip verification if no secret configured (development)
        return True
    if not signature:
        return False

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub push payload."""
    repo = payload.get("repository") or {}
    head_commit = payload.get("head_commit") or {}

    # refs/heads/main -> branch main, refs/tags/v1 -> tag v1
    ref = payload.get("ref", "")
    branch, tag = "", ""
    if ref.startswith("refs/heads/"):
        branch = ref[len("refs/heads/"):]
    elif ref.startswith("refs/tags/"):
        tag = ref[len("refs/tags/"):]
    else:
        branch = ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id") or payload.get("after", ""),
        "branch": branch,
        "tag": tag,
        "commit_message": head_commit.get("message", ""),
        "pusher": (payload.get("pusher") or {}).get("name", ""),
        "deleted": bool(payload.get("deleted", False)),
    }

def _headers() -> Dict[str, str]:
    headers = {"Accept": "application/vnd.github.raw+json"}
    if settings.github_token:
        headers["Authorization"] = f"Bearer {settings.github_token}"
    return headers

async def fetch_build_config(
    full_name: str,
    commit_sha: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[Tuple[str, str]]:
    """
    Fetch the build file at a commit through the GitHub contents API.
    Returns (path, text) for the first file found, or None.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(base_url=settings.github_api_url, timeout=30.0)

    try:
        for path in BUILD_FILE_PATHS:
            response = await client.get(
                f"/repos/{full_name}/contents/{path}",
                params={"ref": commit_sha},
                headers=_headers(),
            )
            if response.status_code == 404:
                continue
            response.raise_for_status()
            logger.info(f"Found {path} in {full_name}@{commit_sha[:7]}")
            return path, response.text
        return None
    finally:
        if owns_client:
            await client.aclose()
