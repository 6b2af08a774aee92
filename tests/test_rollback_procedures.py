import os
import subprocess

import pytest

from apps.codespaces.errors import BackupError, ProcedureError, VerificationError
from apps.codespaces.models.rollback_models import ProcedureDomain, RollbackProcedure
from apps.codespaces.services.rollback_procedures import (
    CommandProcedure,
    ConfigurationProcedure,
    DependenciesProcedure,
    FileTreeProcedure,
    default_handlers,
)

NOW = 1_700_000_000.0


def write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


@pytest.fixture
def trees(tmp_path):
    good, target = tmp_path / "known-good", tmp_path / "app"
    write(good / "index.php", "v1")
    write(good / "src" / "Kernel.php", "kernel v1")
    write(target / "index.php", "v2")
    write(target / "src" / "Kernel.php", "kernel v1")
    write(target / "src" / "New.php", "added in v2")
    write(target / "storage" / "app.log", "keep me")
    return good, target


def files_procedure(tmp_path, good, target, **overrides):
    values = dict(
        domain=ProcedureDomain.FILES,
        target_path=str(target),
        known_good_path=str(good),
        backup_dir=str(tmp_path / "backups"),
        exclude_patterns=("*.log", "*.cache", "*.tmp"),
    )
    values.update(overrides)
    return RollbackProcedure(**values)


def test_file_rollback_restores_known_good_tree(tmp_path, trees):
    good, target = trees
    procedure = files_procedure(tmp_path, good, target)
    handler = FileTreeProcedure(clock=lambda: NOW)

    handler.rollback(procedure)

    assert (target / "index.php").read_text() == "v1"
    assert not (target / "src" / "New.php").exists()
    assert (target / "storage" / "app.log").read_text() == "keep me"
    handler.verify(procedure)


def test_file_verify_reports_differences(tmp_path, trees):
    good, target = trees
    procedure = files_procedure(tmp_path, good, target)

    with pytest.raises(VerificationError) as exc:
        FileTreeProcedure().verify(procedure)

    assert "modified index.php" in str(exc.value)
    assert "unexpected src/New.php" in str(exc.value)


def test_file_backup_skips_excluded_files(tmp_path, trees):
    good, target = trees
    procedure = files_procedure(tmp_path, good, target)

    ref = FileTreeProcedure(clock=lambda: NOW).backup(procedure)

    backup = tmp_path / "backups" / "files-1700000000000"
    assert ref == str(backup)
    assert (backup / "index.php").read_text() == "v2"
    assert (backup / "src" / "New.php").exists()
    assert not (backup / "storage" / "app.log").exists()


def test_backup_needs_a_backup_dir(tmp_path, trees):
    good, target = trees
    procedure = files_procedure(tmp_path, good, target, backup_dir=None)

    with pytest.raises(BackupError):
        FileTreeProcedure().backup(procedure)


def test_rollback_without_snapshot_fails(tmp_path, trees):
    _, target = trees
    procedure = files_procedure(tmp_path, tmp_path / "missing", target)

    with pytest.raises(ProcedureError):
        FileTreeProcedure().rollback(procedure)


def test_expired_backups_are_pruned(tmp_path):
    root = tmp_path / "backups"
    old, fresh = root / "files-1", root / "files-2"
    old.mkdir(parents=True)
    fresh.mkdir()
    os.utime(old, (NOW - 40 * 86400, NOW - 40 * 86400))
    os.utime(fresh, (NOW - 86400, NOW - 86400))

    removed = FileTreeProcedure(retention_days=30, clock=lambda: NOW).prune_backups(root)

    assert removed == 1
    assert not old.exists()
    assert fresh.exists()


@pytest.mark.parametrize("include_env, expected", [(False, "APP_KEY=current"), (True, "APP_KEY=good")])
def test_configuration_env_files_follow_include_env(tmp_path, include_env, expected):
    good, target = tmp_path / "good", tmp_path / "config"
    write(good / "app.php", "return [];")
    write(good / ".env", "APP_KEY=good")
    write(target / "app.php", "return ['debug' => true];")
    write(target / ".env", "APP_KEY=current")
    procedure = RollbackProcedure(
        domain=ProcedureDomain.CONFIGURATION,
        target_path=str(target),
        known_good_path=str(good),
        include_env=include_env,
    )

    ConfigurationProcedure().rollback(procedure)

    assert (target / "app.php").read_text() == "return [];"
    assert (target / ".env").read_text() == expected


def test_dependencies_restore_manifests_and_reinstall(tmp_path):
    good, target = tmp_path / "good", tmp_path / "app"
    write(good / "composer.json", '{"require": {"php": "^8.1"}}')
    write(good / "composer.lock", "lock v1")
    write(good / "package.json", "{}")
    write(target / "composer.json", '{"require": {"php": "^8.2"}}')
    write(target / "composer.lock", "lock v2")
    write(target / "package.json", '{"private": true}')

    ran = []

    def runner(argv, **kwargs):
        ran.append(argv)
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

    procedure = RollbackProcedure(
        domain=ProcedureDomain.DEPENDENCIES,
        target_path=str(target),
        known_good_path=str(good),
        composer_lock=True,
        rollback_command=("composer", "install", "--no-interaction"),
    )
    handler = DependenciesProcedure(runner=runner)

    handler.rollback(procedure)
    handler.verify(procedure)

    assert (target / "composer.lock").read_text() == "lock v1"
    assert (target / "package.json").read_text() == '{"private": true}'
    assert ran == [["composer", "install", "--no-interaction"]]


def test_command_procedure_runs_configured_commands():
    ran = []

    def runner(argv, **kwargs):
        ran.append((argv, kwargs["timeout"]))
        return subprocess.CompletedProcess(argv, 0, stdout="dumping\n/backups/db.sql\n", stderr="")

    procedure = RollbackProcedure(
        domain=ProcedureDomain.DATABASE,
        timeout_seconds=60,
        backup_command=("mysqldump", "app"),
        rollback_command=("mysql-restore", "known-good.sql"),
    )
    handler = CommandProcedure(runner=runner)

    assert handler.backup(procedure) == "/backups/db.sql"
    handler.rollback(procedure)
    assert ran == [(["mysqldump", "app"], 60), (["mysql-restore", "known-good.sql"], 60)]


def test_command_failure_maps_to_step_error():
    def runner(argv, **kwargs):
        return subprocess.CompletedProcess(argv, 1, stdout="", stderr="table users is corrupt")

    procedure = RollbackProcedure(domain=ProcedureDomain.DATABASE, verify_command=("check-db",))

    with pytest.raises(VerificationError) as exc:
        CommandProcedure(runner=runner).verify(procedure)

    assert "table users is corrupt" in str(exc.value)


def test_database_procedure_without_commands_fails():
    with pytest.raises(BackupError):
        CommandProcedure().backup(RollbackProcedure(domain=ProcedureDomain.DATABASE))


def test_default_handlers_cover_every_domain():
    handlers = default_handlers()

    assert set(handlers) == set(ProcedureDomain)
    assert all(handler.domain == domain for domain, handler in handlers.items())
