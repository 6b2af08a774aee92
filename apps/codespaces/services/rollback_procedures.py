"""
Domain handlers for rollback procedures.

Every handler implements the same three steps, driven by the
RollbackController:

  backup(procedure)   -> reference to the backup taken
  rollback(procedure) -> restore the last known good state
  verify(procedure)   -> raise VerificationError if the result is wrong

Handlers:
  - CommandProcedure       database (backup/restore/verify commands)
  - FileTreeProcedure      files (known-good tree copied over the target)
  - ConfigurationProcedure configuration tree, `.env` only with include_env
  - DependenciesProcedure  composer/npm manifests + reinstall command
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Set

from ..errors import BackupError, ProcedureError, VerificationError
from ..models.rollback_models import ProcedureDomain, RollbackProcedure

logger = logging.getLogger("codespaces.rollback.procedures")

Runner = Callable[..., subprocess.CompletedProcess]


class ProcedureHandler(ABC):
    domain: ProcedureDomain

    @abstractmethod
    def backup(self, procedure: RollbackProcedure) -> str: ...

    @abstractmethod
    def rollback(self, procedure: RollbackProcedure) -> None: ...

    @abstractmethod
    def verify(self, procedure: RollbackProcedure) -> None: ...


def _run_command(
    argv: Sequence[str],
    timeout: float,
    runner: Runner,
    error_cls: type = ProcedureError,
) -> str:
    try:
        proc = runner(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise error_cls(f"{argv[0]}: {exc}") from exc

    if proc.returncode != 0:
        detail = (proc.stderr or proc.stdout or "").strip()[:500]
        raise error_cls(f"{' '.join(argv)} exited with {proc.returncode}: {detail}")
    return (proc.stdout or "").strip()


# ---------------------------------------------------------------------------
# Database: external commands
# ---------------------------------------------------------------------------


class CommandProcedure(ProcedureHandler):
    """
    Runs configured argv lists, e.g. a mysqldump for backup, a restore of the
    last known good dump for rollback, and an integrity query for verify.
    """

    def __init__(self, domain: ProcedureDomain = ProcedureDomain.DATABASE, runner: Runner = subprocess.run) -> None:
        self.domain = domain
        self._runner = runner

    def backup(self, procedure: RollbackProcedure) -> str:
        if not procedure.backup_command:
            raise BackupError(f"No backup command configured for {self.domain.value}")
        output = _run_command(procedure.backup_command, procedure.timeout_seconds, self._runner, BackupError)
        return output.splitlines()[-1] if output else " ".join(procedure.backup_command)

    def rollback(self, procedure: RollbackProcedure) -> None:
        if not procedure.rollback_command:
            raise ProcedureError(f"No rollback command configured for {self.domain.value}")
        _run_command(procedure.rollback_command, procedure.timeout_seconds, self._runner)

    def verify(self, procedure: RollbackProcedure) -> None:
        if not procedure.verify_command:
            raise VerificationError(f"No verify command configured for {self.domain.value}")
        _run_command(procedure.verify_command, procedure.timeout_seconds, self._runner, VerificationError)


# ---------------------------------------------------------------------------
# Files: known-good tree restored over the target tree
# ---------------------------------------------------------------------------


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FileTreeProcedure(ProcedureHandler):
    """
    Makes `target_path` match `known_good_path`, leaving files that match an
    exclusion pattern untouched in both directions.
    """

    def __init__(
        self,
        domain: ProcedureDomain = ProcedureDomain.FILES,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.domain = domain
        self.retention_days = retention_days
        self._clock = clock

    # -- selection ------------------------------------------------------

    def exclusions(self, procedure: RollbackProcedure) -> List[str]:
        return list(procedure.exclude_patterns)

    def is_excluded(self, rel: str, patterns: Sequence[str]) -> bool:
        name = rel.rsplit("/", 1)[-1]
        return any(fnmatch.fnmatch(rel, p) or fnmatch.fnmatch(name, p) for p in patterns)

    def managed_files(self, root: Path, procedure: RollbackProcedure) -> Set[str]:
        patterns = self.exclusions(procedure)
        found: Set[str] = set()
        if not root.exists():
            return found
        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                rel = Path(dirpath, filename).relative_to(root).as_posix()
                if not self.is_excluded(rel, patterns):
                    found.add(rel)
        return found

    def _paths(self, procedure: RollbackProcedure) -> tuple:
        if not procedure.target_path or not procedure.known_good_path:
            raise ProcedureError(
                f"{self.domain.value} rollback needs target_path and known_good_path"
            )
        return Path(procedure.target_path), Path(procedure.known_good_path)

    # -- steps ----------------------------------------------------------

    def backup(self, procedure: RollbackProcedure) -> str:
        target, _ = self._paths(procedure)
        if not procedure.backup_dir:
            raise BackupError(f"No backup_dir configured for {self.domain.value}")

        backup_root = Path(procedure.backup_dir)
        dest = backup_root / f"{self.domain.value}-{int(self._clock() * 1000)}"
        try:
            backup_root.mkdir(parents=True, exist_ok=True)
            self.prune_backups(backup_root)
            dest.mkdir()
            for rel in sorted(self.managed_files(target, procedure)):
                out = dest / rel
                out.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(target / rel, out)
        except OSError as exc:
            raise BackupError(f"Backup of {target} failed: {exc}") from exc

        logger.info("Backed up %s to %s", target, dest)
        return str(dest)

    def rollback(self, procedure: RollbackProcedure) -> None:
        target, known_good = self._paths(procedure)
        if not known_good.is_dir():
            raise ProcedureError(f"Known good snapshot {known_good} does not exist")

        wanted = self.managed_files(known_good, procedure)
        present = self.managed_files(target, procedure)
        try:
            for rel in sorted(wanted):
                out = target / rel
                out.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(known_good / rel, out)
            for rel in sorted(present - wanted):
                (target / rel).unlink()
        except OSError as exc:
            raise ProcedureError(f"Restoring {target} failed: {exc}") from exc

        logger.info(
            "Restored %d files into %s (%d removed)", len(wanted), target, len(present - wanted)
        )

    def verify(self, procedure: RollbackProcedure) -> None:
        target, known_good = self._paths(procedure)
        wanted = self.managed_files(known_good, procedure)
        present = self.managed_files(target, procedure)

        problems = [f"missing {rel}" for rel in sorted(wanted - present)]
        problems += [f"unexpected {rel}" for rel in sorted(present - wanted)]
        for rel in sorted(wanted & present):
            if _sha256(known_good / rel) != _sha256(target / rel):
                problems.append(f"modified {rel}")

        if problems:
            shown = ", ".join(problems[:5])
            more = f" (+{len(problems) - 5} more)" if len(problems) > 5 else ""
            raise VerificationError(f"{target} differs from known good: {shown}{more}")

    def prune_backups(self, backup_root: Path) -> int:
        """Remove this domain's backups older than the retention period."""
        cutoff = self._clock() - self.retention_days * 86400
        removed = 0
        for entry in backup_root.glob(f"{self.domain.value}-*"):
            if entry.is_dir() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("Pruned %d expired %s backups", removed, self.domain.value)
        return removed


class ConfigurationProcedure(FileTreeProcedure):
    """Configuration tree; `.env` files are only touched with include_env."""

    def __init__(self, retention_days: int = 30, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ProcedureDomain.CONFIGURATION, retention_days, clock)

    def exclusions(self, procedure: RollbackProcedure) -> List[str]:
        patterns = list(procedure.exclude_patterns)
        if not procedure.include_env:
            patterns.extend([".env", ".env.*"])
        return patterns


COMPOSER_FILES = ("composer.json", "composer.lock")
NPM_FILES = ("package.json", "package-lock.json")


class DependenciesProcedure(FileTreeProcedure):
    """
    Restores dependency manifests, then runs the reinstall command (e.g.
    `composer install`) if one is configured. Only top-level manifests are
    managed.
    """

    def __init__(
        self,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
        runner: Runner = subprocess.run,
    ) -> None:
        super().__init__(ProcedureDomain.DEPENDENCIES, retention_days, clock)
        self._runner = runner

    def manifests(self, procedure: RollbackProcedure) -> List[str]:
        names: List[str] = []
        if procedure.composer_lock:
            names.extend(COMPOSER_FILES)
        if procedure.package_json:
            names.extend(NPM_FILES)
        return names

    def managed_files(self, root: Path, procedure: RollbackProcedure) -> Set[str]:
        patterns = self.exclusions(procedure)
        return {
            name
            for name in self.manifests(procedure)
            if (root / name).is_file() and not self.is_excluded(name, patterns)
        }

    def rollback(self, procedure: RollbackProcedure) -> None:
        super().rollback(procedure)
        if procedure.rollback_command:
            _run_command(procedure.rollback_command, procedure.timeout_seconds, self._runner)

    def verify(self, procedure: RollbackProcedure) -> None:
        super().verify(procedure)
        if procedure.verify_command:
            _run_command(procedure.verify_command, procedure.timeout_seconds, self._runner, VerificationError)


def default_handlers(retention_days: int = 30) -> Dict[ProcedureDomain, ProcedureHandler]:
    return {
        ProcedureDomain.DATABASE: CommandProcedure(ProcedureDomain.DATABASE),
        ProcedureDomain.FILES: FileTreeProcedure(ProcedureDomain.FILES, retention_days),
        ProcedureDomain.CONFIGURATION: ConfigurationProcedure(retention_days),
        ProcedureDomain.DEPENDENCIES: DependenciesProcedure(retention_days),
    }

