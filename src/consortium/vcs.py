from __future__ import annotations

import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

CheckState = Literal["success", "failure", "pending"]

PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")
RUN_ID_PATTERN = re.compile(r"runs/(\d+)")
PENDING_STATES = {"PENDING", "IN_PROGRESS", "QUEUED"}
FAILURE_LOG_TAIL_LINES = 200


class VcsError(RuntimeError):
    """Raised when a git or gh command fails."""


@dataclass(slots=True)
class CheckStatus:
    state: CheckState
    details: str = ""
    failed_checks: list[str] = field(default_factory=list)


class VcsDriver(ABC):
    @abstractmethod
    def commit_if_dirty(self, message: str) -> bool: ...

    @abstractmethod
    def current_branch(self) -> str: ...

    @abstractmethod
    def push(self, branch: str | None = None) -> None: ...

    @abstractmethod
    def create_pr(self, title: str, body_file: Path) -> tuple[str, int | None]: ...

    @abstractmethod
    def check_status(self, pr_number: int) -> CheckStatus: ...

    @abstractmethod
    def failure_logs(self, pr_number: int) -> str: ...

    @abstractmethod
    def diff_summary(self, base: str) -> str: ...

    @abstractmethod
    def commit_log(self, base: str) -> str: ...


def parse_pr_number(url: str) -> int | None:
    match = PR_NUMBER_PATTERN.search(url)
    return int(match.group(1)) if match else None


def classify_checks(checks: list[dict]) -> CheckStatus:
    failures = [str(check.get("name", "?")) for check in checks if check.get("state") == "FAILURE"]
    if failures:
        return CheckStatus(state="failure", details=", ".join(failures), failed_checks=failures)
    pending = [
        str(check.get("name", "?")) for check in checks if check.get("state") in PENDING_STATES
    ]
    if pending:
        return CheckStatus(state="pending", details=", ".join(pending))
    return CheckStatus(state="success", details="All checks passed")


class GitHubDriver(VcsDriver):
    """git for the working tree, the ``gh`` CLI for pull requests and checks."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s", " ".join(args))
        try:
            proc = subprocess.run(
                args,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            raise VcsError(f"{args[0]} failed: {exc}") from exc
        if check and proc.returncode != 0:
            raise VcsError(proc.stderr.strip() or proc.stdout.strip() or f"{args[0]} failed")
        return proc

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run(["git", "--no-pager", *args], check=check)

    def commit_if_dirty(self, message: str) -> bool:
        status = self._run_git(["status", "--porcelain"]).stdout
        if not status.strip():
            return False
        self._run_git(["add", "-A"])
        self._run_git(["commit", "-m", message])
        return True

    def current_branch(self) -> str:
        branch = self._run_git(["branch", "--show-current"]).stdout.strip()
        if not branch:
            raise VcsError("Not on a branch (detached HEAD).")
        return branch

    def push(self, branch: str | None = None) -> None:
        if branch:
            self._run_git(["push", "-u", "origin", branch])
        else:
            self._run_git(["push"])

    def create_pr(self, title: str, body_file: Path) -> tuple[str, int | None]:
        proc = self._run(["gh", "pr", "create", "--title", title, "--body-file", str(body_file)])
        lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
        url = lines[-1] if lines else ""
        return url, parse_pr_number(url)

    def _checks(self, pr_number: int, fields: str) -> list[dict]:
        # gh exits non-zero while checks fail or are pending, so only the JSON matters.
        proc = self._run(
            ["gh", "pr", "checks", str(pr_number), "--json", fields],
            check=False,
        )
        try:
            checks = json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            raise VcsError(proc.stderr.strip() or f"Unreadable gh output: {exc}") from exc
        if not isinstance(checks, list):
            raise VcsError("Unexpected gh pr checks output.")
        return [check for check in checks if isinstance(check, dict)]

    def check_status(self, pr_number: int) -> CheckStatus:
        try:
            checks = self._checks(pr_number, "name,state")
        except VcsError as exc:
            logger.warning("Could not query checks for PR #%s: %s", pr_number, exc)
            return CheckStatus(state="pending", details=f"Unable to check status: {exc}")
        return classify_checks(checks)

    def failure_logs(self, pr_number: int) -> str:
        try:
            checks = self._checks(pr_number, "name,state,link")
        except VcsError as exc:
            return f"Unable to get failure logs: {exc}"

        sections = ["# CI Failure Details", ""]
        for check in checks:
            if check.get("state") != "FAILURE":
                continue
            link = str(check.get("link") or "")
            sections.append(f"## {check.get('name', '?')}")
            sections.append(f"URL: {link}")
            sections.append("")
            run_match = RUN_ID_PATTERN.search(link)
            if run_match is None:
                continue
            try:
                proc = self._run(
                    ["gh", "run", "view", run_match.group(1), "--log-failed"],
                    timeout=30,
                )
            except VcsError:
                sections.append("Unable to fetch detailed logs.")
                sections.append("")
                continue
            tail = proc.stdout.splitlines()[-FAILURE_LOG_TAIL_LINES:]
            sections.append("```")
            sections.extend(tail)
            sections.append("```")
            sections.append("")
        return "\n".join(sections)

    def diff_summary(self, base: str) -> str:
        return self._run_git(["diff", base, "--stat"]).stdout

    def commit_log(self, base: str) -> str:
        return self._run_git(["log", f"{base}..HEAD", "--oneline"]).stdout
