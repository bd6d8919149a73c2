"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from typing import Optional, Dict, Any

import yaml

from api.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_FILES = (
    ".pipeline.yml",
    ".pipeline.yaml",
    "pipeline.yml",
    "pipeline.yaml",
)

class RepositoryError(Exception):
    """Raised when the triggering repository cannot be fetched."""
    pass

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature or "")

async def clone_repository(clone_url: str, commit_sha: str) -> str:
    """
    Shallow-clone repository to a temporary directory to read its pipeline.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="stageline_")
    repo_path = os.path.join(temp_dir, "repo")

    try:
        subprocess.run(
            ["git", "clone", "--depth", "1", clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        if commit_sha:
            # Best effort: the commit may already be HEAD of the shallow clone
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RepositoryError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RepositoryError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}")

async def fetch_pipeline_config(repo_path: str) -> Optional[Dict[str, Any]]:
    """
    Read the pipeline definition from the repository root.
    Returns parsed config or None if not found.
    """
    for filename in PIPELINE_FILES:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            with open(config_path, "r") as f:
                return yaml.safe_load(f)

    return None

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract trigger info (branch, commit) from a GitHub push payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # refs/heads/main -> main; tags keep their full ref
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "is_branch": ref.startswith("refs/heads/"),
        "deleted": bool(payload.get("deleted", False)),
        "commit_message": head_commit.get("message", ""),
        "pusher": payload.get("pusher", {}).get("name", ""),
    }

def cleanup_repo(repo_path: str):
    """Clean up cloned repository and its temp directory."""
    if not repo_path:
        return

    parent = os.path.dirname(repo_path)
    if os.path.exists(parent):
        shutil.rmtree(parent, ignore_errors=True)
        logger.debug(f"Removed {parent}")
