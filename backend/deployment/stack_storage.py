"""
Filesystem storage for stacks.

Simple file I/O - no database interaction.

Durable stack projects live under STACKS_DIR/<stack_id>/<entry_point>. Updates
follow a write-with-backup protocol:

    update_durable()   -> previous bytes copied to a sibling backup, new bytes
                          written atomically (temp file + rename)
    rollback()         -> previous bytes restored from the backup
    remove_backup()    -> update acknowledged, backup discarded

At most one backup exists per (stack folder, file). When the file did not
exist before the update, the backup is an "absent" marker and rollback removes
the new file instead of restoring bytes.

All public functions are async to avoid blocking the event loop on slow storage (NFS, etc.).
Uses asyncio.to_thread() for synchronous filesystem operations.
"""
import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

import aiofiles

from config.paths import STACKS_DIR as _STACKS_DIR

logger = logging.getLogger(__name__)

STACKS_DIR = Path(_STACKS_DIR)

BACKUP_SUFFIX = '.bak'
ABSENT_BACKUP_SUFFIX = '.bak-absent'


def get_stack_folder(stack_id: int) -> str:
    """Folder name of a stack inside STACKS_DIR."""
    return str(stack_id)


def _ensure_within(path: Path, root: Path) -> None:
    """
    Ensure path is within root.

    Prevents path traversal attacks like "../../../etc/passwd" through
    entry points or stack folders.

    Raises:
        ValueError: If path escapes root
    """
    resolved = path.resolve()
    root_resolved = root.resolve()
    if resolved != root_resolved and not str(resolved).startswith(str(root_resolved) + os.sep):
        raise ValueError("Path escapes stacks directory")


def validate_path_safety(path: Path) -> None:
    """
    Ensure path is within STACKS_DIR and not a symlink escape.

    Raises:
        ValueError: If path escapes stacks directory or is a symlink
    """
    # Reject symlinks to prevent TOCTOU race conditions
    if path.is_symlink():
        raise ValueError("Symlinks not allowed in stacks directory")
    _ensure_within(path, STACKS_DIR)


def get_stack_path(stack_folder: str) -> Path:
    """
    Get directory path for a stack.

    Raises:
        ValueError: If path would escape stacks directory
    """
    path = STACKS_DIR / stack_folder
    validate_path_safety(path)
    return path


def _get_file_path(stack_folder: str, rel_path: str) -> Path:
    stack_path = get_stack_path(stack_folder)
    file_path = stack_path / rel_path
    _ensure_within(file_path, stack_path)
    if file_path.is_symlink():
        raise ValueError("Symlinks not allowed in stacks directory")
    return file_path


def _backup_paths(file_path: Path):
    return (
        file_path.with_name(file_path.name + BACKUP_SUFFIX),
        file_path.with_name(file_path.name + ABSENT_BACKUP_SUFFIX),
    )


def _to_bytes(content: Union[str, bytes]) -> bytes:
    return content.encode('utf-8') if isinstance(content, str) else content


async def _atomic_write_file(target_path: Path, content: bytes) -> None:
    """Write content atomically using temp file + rename pattern."""
    fd, temp_path = tempfile.mkstemp(dir=target_path.parent, suffix='.tmp')
    try:
        async with aiofiles.open(fd, 'wb', closefd=True) as f:
            await f.write(content)
        # Use asyncio.to_thread to avoid blocking on slow filesystems (NFS)
        await asyncio.to_thread(os.replace, temp_path, target_path)
    except BaseException:
        await asyncio.to_thread(Path(temp_path).unlink, True)  # missing_ok=True
        raise


def _atomic_copy_file(source: Path, target: Path) -> None:
    """Copy source over target atomically (copy to temp + rename)."""
    fd, temp_path = tempfile.mkstemp(dir=target.parent, suffix='.tmp')
    os.close(fd)
    try:
        shutil.copy2(source, temp_path)
        os.replace(temp_path, target)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise


async def write_ephemeral(directory: str, rel_path: str, content: Union[str, bytes]) -> str:
    """
    Materialize a file inside a per-request directory.

    Args:
        directory: Fresh temporary directory owned by the caller
        rel_path: Relative path of the file (e.g. the stack entry point)
        content: File content

    Returns:
        Absolute path of the written file

    Raises:
        ValueError: If rel_path escapes directory
    """
    root = Path(directory)
    target = root / rel_path
    _ensure_within(target, root)

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await _atomic_write_file(target, _to_bytes(content))
    return str(target)


async def read_durable(stack_folder: str, rel_path: str) -> bytes:
    """
    Read the durable copy of a stack file.

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    file_path = _get_file_path(stack_folder, rel_path)
    async with aiofiles.open(file_path, 'rb') as f:
        return await f.read()


async def update_durable(stack_folder: str, rel_path: str, content: Union[str, bytes]) -> str:
    """
    Replace the durable copy of a stack file, keeping a backup of the previous one.

    The backup stays on disk until remove_backup() or rollback() is called.

    Args:
        stack_folder: Stack folder name (see get_stack_folder)
        rel_path: Relative path of the file inside the stack folder
        content: New file content

    Returns:
        Absolute project path of the stack (the stack folder)
    """
    file_path = _get_file_path(stack_folder, rel_path)
    backup_path, absent_marker = _backup_paths(file_path)

    def _create_backup():
        file_path.parent.mkdir(parents=True, exist_ok=True)
        # A leftover backup from an interrupted update is superseded; drop it
        # first so a failed copy leaves rollback() nothing stale to restore
        backup_path.unlink(missing_ok=True)
        absent_marker.unlink(missing_ok=True)
        if file_path.exists():
            _atomic_copy_file(file_path, backup_path)
        else:
            absent_marker.touch()

    await asyncio.to_thread(_create_backup)
    await _atomic_write_file(file_path, _to_bytes(content))

    logger.debug(f"Updated stack file {rel_path} in {stack_folder}")
    return str(get_stack_path(stack_folder))


async def rollback(stack_folder: str, rel_path: str) -> None:
    """
    Restore the stack file saved by the last update_durable() call.

    A no-op if there is no backup.
    """
    file_path = _get_file_path(stack_folder, rel_path)
    backup_path, absent_marker = _backup_paths(file_path)

    def _restore():
        if backup_path.exists():
            _atomic_copy_file(backup_path, file_path)
            backup_path.unlink()
            logger.info(f"Restored {rel_path} in stack {stack_folder} from backup")
        elif absent_marker.exists():
            file_path.unlink(missing_ok=True)
            absent_marker.unlink()
            logger.info(f"Removed {rel_path} in stack {stack_folder} (did not exist before update)")

    await asyncio.to_thread(_restore)


async def remove_backup(stack_folder: str, rel_path: str) -> None:
    """Discard the backup of a stack file once its update has succeeded."""
    file_path = _get_file_path(stack_folder, rel_path)

    def _remove():
        for path in _backup_paths(file_path):
            path.unlink(missing_ok=True)

    await asyncio.to_thread(_remove)


# =============================================================================
# Whole-tree replacement (git-managed stacks)
# =============================================================================

def _tree_backup_path(stack_path: Path) -> Path:
    return stack_path.with_name(stack_path.name + BACKUP_SUFFIX)


async def replace_durable_tree(stack_folder: str, source_dir: str) -> str:
    """
    Replace a stack folder with a copy of source_dir, keeping a backup.

    Used for git-managed stacks where the whole working tree is the project.

    Returns:
        Absolute project path of the stack
    """
    stack_path = get_stack_path(stack_folder)
    backup_path = _tree_backup_path(stack_path)

    def _replace():
        STACKS_DIR.mkdir(parents=True, exist_ok=True)
        if backup_path.exists():
            shutil.rmtree(backup_path)

        # Copy next to the target first so the final swap is two renames
        staging = Path(tempfile.mkdtemp(dir=STACKS_DIR, prefix=f".{stack_folder}-"))
        try:
            shutil.copytree(
                source_dir, staging, symlinks=True, dirs_exist_ok=True,
                ignore=shutil.ignore_patterns('.git'),
            )
            if stack_path.exists():
                stack_path.rename(backup_path)
            staging.rename(stack_path)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    await asyncio.to_thread(_replace)
    logger.debug(f"Replaced stack tree {stack_folder}")
    return str(stack_path)


async def rollback_tree(stack_folder: str) -> None:
    """Restore a stack folder saved by replace_durable_tree(). No-op without backup."""
    stack_path = get_stack_path(stack_folder)
    backup_path = _tree_backup_path(stack_path)

    def _restore():
        if not backup_path.exists():
            return
        if stack_path.exists():
            shutil.rmtree(stack_path)
        backup_path.rename(stack_path)
        logger.info(f"Restored stack tree {stack_folder} from backup")

    await asyncio.to_thread(_restore)


async def remove_tree_backup(stack_folder: str) -> None:
    """Discard the backup of a stack folder once its update has succeeded."""
    backup_path = _tree_backup_path(get_stack_path(stack_folder))

    def _remove():
        if backup_path.exists():
            shutil.rmtree(backup_path)

    await asyncio.to_thread(_remove)
