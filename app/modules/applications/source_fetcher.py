import json
import os
import re
import shutil
import subprocess
import logging
from pathlib import Path
from typing import Optional, List
from app.config import settings
from app.core import process_registry
from app.core.exceptions import (
    ToolExecutionError, NetworkError, CredentialError, ConfigurationError
)
from app.modules.applications.schemas import RuntimeCategory

logger = logging.getLogger(__name__)

FULL_CLONE_FLAGS = ["--single-branch", "--depth", "1", "--no-tags", "--filter=blob:none", "--recurse-submodules=no"]
SHALLOW_CLONE_FLAGS = ["--single-branch", "--depth", "1", "--no-tags"]

MISSING_BRANCH = re.compile(r"remote branch (\S+) not found", re.IGNORECASE)
MISSING_REPOSITORY = re.compile(r"repository not found|repository '[^']*' not found|does not appear to be a git repository", re.IGNORECASE)


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Embed a personal access token for github.com https URLs"""
    if token and repo_url.startswith("https://github.com/"):
        return repo_url.replace("https://github.com/", f"https://{token}@github.com/", 1)
    return repo_url


def _redact(text: str, token: Optional[str]) -> str:
    return text.replace(token, "***") if token else text


def classify_clone_error(output: str, timed_out: bool = False):
    """Map git's output to the error taxonomy, or None if nothing specific matched"""
    text = output.lower()
    if timed_out or "timed out" in text or "timeout" in text:
        return NetworkError(
            f"Clone timed out after {settings.clone_timeout} seconds",
            suggestion="The repository might be very large. Try using a Docker image instead for faster deployment."
        )
    if "authentication failed" in text or "invalid username or password" in text or "could not read username" in text:
        return CredentialError(
            "Authentication failed",
            suggestion="Check your GitHub token or make sure the repository is public."
        )
    branch = MISSING_BRANCH.search(output)
    if branch:
        return ConfigurationError(
            f"Branch '{branch.group(1)}' not found",
            suggestion="Check the branch name in the application settings; it must exist on the remote."
        )
    if MISSING_REPOSITORY.search(output):
        return ConfigurationError(
            "Repository not found",
            suggestion="Check the URL or ensure you have access to this private repository."
        )
    if "permission denied" in text or "access denied" in text:
        return CredentialError(
            "Permission denied",
            suggestion="Provide a valid GitHub token for private repositories."
        )
    if "could not resolve host" in text or "network" in text or "connection" in text:
        return NetworkError(
            "Network error while cloning",
            suggestion="Check connectivity to the git host and try again."
        )
    return None


class SourceFetcher:
    """Shallow-clones application repositories into a per-application scratch directory."""

    def __init__(self, scratch_dir: Optional[str] = None, git_binary: Optional[str] = None):
        self.scratch_dir = Path(scratch_dir or settings.clone_scratch_dir)
        self.git_binary = git_binary or settings.git_binary

    def checkout_path(self, application_id: str) -> Path:
        return self.scratch_dir / application_id

    def _git_clone(self, url: str, branch: str, dest: Path, flags: List[str], run_key: Optional[str]) -> None:
        cmd = [self.git_binary, "clone", "--branch", branch] + flags + [url, str(dest)]
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
            )
        except OSError as e:
            raise ToolExecutionError(f"Failed to start git: {str(e)}")

        if run_key:
            process_registry.register(run_key, proc)
        try:
            output, _ = proc.communicate(timeout=settings.clone_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            output, _ = proc.communicate()
            raise ToolExecutionError("git clone timed out", output=output or "", exit_code=None)
        finally:
            if run_key:
                process_registry.unregister(run_key, proc)

        if proc.returncode != 0:
            raise ToolExecutionError(
                f"git clone failed with exit code {proc.returncode}",
                output=output or "",
                exit_code=proc.returncode
            )

    def clone(
        self,
        application_id: str,
        repo_url: str,
        branch: str = "main",
        token: Optional[str] = None,
        run_key: Optional[str] = None
    ) -> Path:
        """
        Clone one branch at depth 1. Falls back to a plain shallow clone when
        the filtered clone fails for a reason other than auth, access or timeout.
        """
        dest = self.checkout_path(application_id)
        self.cleanup(application_id)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        url = authenticated_url(repo_url, token)
        logger.info(f"Cloning {repo_url} (branch: {branch}) into {dest}")

        try:
            self._git_clone(url, branch, dest, FULL_CLONE_FLAGS, run_key)
        except ToolExecutionError as e:
            output = _redact(e.output, token)
            timed_out = e.exit_code is None and "timed out" in str(e)
            classified = classify_clone_error(output, timed_out=timed_out)
            if classified is not None:
                self.cleanup(application_id)
                raise classified
            logger.info(f"Filtered clone failed, retrying with basic shallow clone: {output.strip()[:200]}")
            self.cleanup(application_id)
            try:
                self._git_clone(url, branch, dest, SHALLOW_CLONE_FLAGS, run_key)
            except ToolExecutionError as retry_error:
                self.cleanup(application_id)
                retry_output = _redact(retry_error.output, token)
                timed_out = retry_error.exit_code is None and "timed out" in str(retry_error)
                raise classify_clone_error(retry_output, timed_out=timed_out) or ToolExecutionError(
                    f"Failed to clone repository: {retry_output.strip() or str(retry_error)}",
                    output=retry_output,
                    exit_code=retry_error.exit_code
                )

        logger.info(f"Repository cloned to {dest}")
        return dest

    def cleanup(self, application_id: str) -> None:
        """Remove the checkout. Best-effort."""
        path = self.checkout_path(application_id)
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
            logger.info(f"Cleaned up repository: {path}")
        except OSError as e:
            logger.warning(f"Error cleaning up repository {path}: {str(e)}")


def detect_runtime(repo_path: Path) -> RuntimeCategory:
    """Guess the runtime from marker files at the repository root"""
    repo_path = Path(repo_path)
    package_json = repo_path / "package.json"
    if package_json.is_file():
        try:
            package = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not parse package.json: {str(e)}")
            package = {}
        dependencies = {}
        dependencies.update(package.get("devDependencies") or {})
        dependencies.update(package.get("dependencies") or {})
        if "next" in dependencies or (repo_path / "next.config.js").exists() or (repo_path / "next.config.mjs").exists():
            return RuntimeCategory.NEXTJS
        if "react" in dependencies and (repo_path / "src").is_dir():
            return RuntimeCategory.REACT
        return RuntimeCategory.NODEJS

    if any((repo_path / marker).is_file() for marker in ("requirements.txt", "pyproject.toml", "app.py")):
        return RuntimeCategory.PYTHON

    if (repo_path / "index.html").is_file():
        return RuntimeCategory.STATIC

    logger.info(f"No runtime markers found in {repo_path}, defaulting to nodejs")
    return RuntimeCategory.NODEJS
