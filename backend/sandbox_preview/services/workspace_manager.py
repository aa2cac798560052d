"""
Workspace Manager - Per-session file trees on local disk

Architecture:
- Each session gets a private workspace: TEMP_DIR/<session_id>
- Build output is moved (not copied) into PUBLIC_DIR/previews/<session_id>
- destroy() is idempotent, so a half-written workspace is always reclaimable

Caller-supplied paths are attacker-controlled: every path is validated before
the first byte hits the disk.

Usage:
    workspaces = WorkspaceManager(temp_root, previews_root)
    path = await workspaces.materialize(session_id, {"/lib/main.dart": code}, SessionKind.BUILD)
    ...
    await workspaces.destroy(session_id)
"""

import asyncio
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Tuple, Union

import aiofiles
import aiofiles.os

from sandbox_preview.core.exceptions import InfrastructureError, InvalidInputError, UnsafePathError
from sandbox_preview.core.logging_config import logger
from sandbox_preview.models.session import SessionKind


DIR_MODE = 0o775
FILE_MODE = 0o664

MANIFEST_FILE = "pubspec.yaml"
WEB_ENTRY_FILE = "web/index.html"

DEFAULT_PUBSPEC_YAML = """name: flutter_preview
description: A temporary Flutter project for preview.
version: 1.0.0
environment:
  sdk: '>=2.12.0 <3.0.0'
dependencies:
  flutter:
    sdk: flutter
flutter:
  uses-material-design: true
"""

DEFAULT_INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>Flutter Web</title>
  <meta name="description" content="A new Flutter project.">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <link rel="manifest" href="manifest.json">
</head>
<body>
  <script src="main.dart.js"></script>
</body>
</html>
"""

# Files a build session needs even when the caller left them out
BUILD_SCAFFOLD: Dict[str, str] = {
    MANIFEST_FILE: DEFAULT_PUBSPEC_YAML,
    WEB_ENTRY_FILE: DEFAULT_INDEX_HTML,
}

FileContent = Union[str, bytes]


def normalize_relative_path(raw_path: str) -> str:
    """
    Strip leading separators and reject anything that could leave the root.

    Raises:
        UnsafePathError: empty path, traversal segment, drive/absolute remainder or NUL byte
    """
    if not isinstance(raw_path, str) or "\x00" in raw_path:
        raise UnsafePathError(str(raw_path))

    relative = raw_path.replace("\\", "/").lstrip("/")
    if not relative:
        raise UnsafePathError(raw_path)

    parts = PurePosixPath(relative).parts
    if any(part == ".." for part in parts):
        raise UnsafePathError(raw_path)
    # "C:/x" style drive prefixes would be absolute on Windows hosts
    if parts and parts[0].endswith(":"):
        raise UnsafePathError(raw_path)

    cleaned = [part for part in parts if part not in ("", ".")]
    if not cleaned:
        raise UnsafePathError(raw_path)
    return "/".join(cleaned)


class WorkspaceManager:
    """
    Owns the private workspace of every session and the public artifact
    directory a finished build is moved into.
    """

    def __init__(self, temp_root: Path, previews_root: Path):
        self.temp_root = Path(temp_root)
        self.previews_root = Path(previews_root)

    def ensure_roots(self) -> None:
        """Create the workspace and preview roots"""
        self.temp_root.mkdir(parents=True, exist_ok=True)
        self.previews_root.mkdir(parents=True, exist_ok=True)

    def workspace_path(self, session_id: str) -> Path:
        return self.temp_root / session_id

    def artifact_path(self, session_id: str) -> Path:
        return self.previews_root / session_id

    def resolve_inside(self, session_id: str, raw_path: str) -> Path:
        """Map a caller path onto the workspace, refusing escapes"""
        root = self.workspace_path(session_id).resolve()
        target = (root / normalize_relative_path(raw_path)).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            raise UnsafePathError(raw_path)
        if target == root:
            raise UnsafePathError(raw_path)
        return target

    def _plan_writes(self, session_id: str, files: Mapping[str, FileContent]) -> List[Tuple[Path, bytes]]:
        """Validate every entry up front; nothing is written if any entry is bad"""
        if not isinstance(files, Mapping):
            raise InvalidInputError("files must be a mapping of path to content", field="files")

        planned: Dict[Path, bytes] = {}
        for raw_path, content in files.items():
            target = self.resolve_inside(session_id, raw_path)
            if isinstance(content, str):
                data = content.encode("utf-8")
            elif isinstance(content, (bytes, bytearray)):
                data = bytes(content)
            else:
                raise InvalidInputError(f"Content of '{raw_path}' must be text or bytes", field="files")
            planned[target] = data

        # A file and a directory cannot share a path
        targets = set(planned)
        for target in targets:
            for parent in target.parents:
                if parent in targets:
                    raise InvalidInputError(
                        f"'{parent.name}' is submitted both as a file and as a directory", field="files"
                    )
        return list(planned.items())

    async def materialize(
        self,
        session_id: str,
        files: Mapping[str, FileContent],
        kind: SessionKind = SessionKind.BUILD,
    ) -> Path:
        """
        Write a session's files to its private workspace.

        Returns:
            The workspace directory

        Raises:
            InvalidInputError: unsafe or malformed entries (before any write)
            InfrastructureError: the filesystem refused a write
        """
        planned = self._plan_writes(session_id, files)
        workspace = self.workspace_path(session_id).resolve()

        try:
            await aiofiles.os.makedirs(workspace, exist_ok=True)
            await asyncio.to_thread(os.chmod, workspace, DIR_MODE)

            for target, data in planned:
                await self._write_file(workspace, target, data)
                logger.debug(f"[Workspace] Wrote {target.relative_to(workspace)} ({len(data)} bytes)")

            if kind == SessionKind.BUILD:
                await self._apply_scaffold(session_id, workspace)

        except OSError as e:
            raise InfrastructureError(f"Failed to materialize workspace for {session_id}", cause=e) from e

        logger.info(f"[Workspace] Materialized {len(planned)} files for {session_id} at {workspace}")
        return workspace

    async def _write_file(self, workspace: Path, target: Path, data: bytes) -> None:
        parent = target.parent
        if not await aiofiles.os.path.isdir(parent):
            await aiofiles.os.makedirs(parent, exist_ok=True)
            # makedirs honours umask; widen every level we own
            current = parent
            while current != workspace and workspace in current.parents:
                await asyncio.to_thread(os.chmod, current, DIR_MODE)
                current = current.parent

        async with aiofiles.open(target, "wb") as f:
            await f.write(data)
        await asyncio.to_thread(os.chmod, target, FILE_MODE)

    async def _apply_scaffold(self, session_id: str, workspace: Path) -> None:
        """Synthesize boilerplate the build toolchain needs but the caller omitted"""
        for relative, content in BUILD_SCAFFOLD.items():
            target = workspace / relative
            if await aiofiles.os.path.exists(target):
                continue
            await self._write_file(workspace, target, content.encode("utf-8"))
            logger.info(f"[Workspace] {relative} missing for {session_id}, wrote default scaffold")

    def describe(self, session_id: str) -> str:
        """Recursive listing of a workspace, for debug logging"""
        workspace = self.workspace_path(session_id)
        if not workspace.exists():
            return f"{workspace} (absent)"
        lines = [str(workspace)]
        for path in sorted(workspace.rglob("*")):
            rel = path.relative_to(workspace)
            suffix = "/" if path.is_dir() else f" ({path.stat().st_size} bytes)"
            lines.append(f"  {rel}{suffix}")
        return "\n".join(lines)

    async def relocate_artifact(self, session_id: str, built_path: Path, public_path: Path = None) -> Path:
        """
        Move a finished build out of the private workspace into the served store.

        Raises:
            InfrastructureError: build output missing or the move failed
        """
        public_path = Path(public_path) if public_path else self.artifact_path(session_id)
        built_path = Path(built_path)

        if not await aiofiles.os.path.isdir(built_path):
            raise InfrastructureError(f"Build output not found at {built_path}")

        try:
            await aiofiles.os.makedirs(public_path.parent, exist_ok=True)
            if await aiofiles.os.path.exists(public_path):
                await asyncio.to_thread(shutil.rmtree, public_path)
            # shutil.move falls back to copy+delete across filesystems
            await asyncio.to_thread(shutil.move, str(built_path), str(public_path))
        except OSError as e:
            raise InfrastructureError(f"Failed to relocate build output for {session_id}", cause=e) from e

        logger.info(f"[Workspace] Relocated artifact for {session_id} -> {public_path}")
        return public_path

    async def destroy(self, session_id: str) -> bool:
        """
        Remove a session's workspace. Safe on partial or already-absent trees.

        Returns:
            True if something was deleted
        """
        return await self._remove_tree(self.workspace_path(session_id))

    async def delete_artifact(self, session_id: str) -> bool:
        """Remove a session's public artifact"""
        return await self._remove_tree(self.artifact_path(session_id))

    async def _remove_tree(self, path: Path) -> bool:
        if not await asyncio.to_thread(os.path.lexists, path):
            return False
        if await aiofiles.os.path.isdir(path) and not await aiofiles.os.path.islink(path):
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await aiofiles.os.remove(path)
        logger.debug(f"[Workspace] Removed {path}")
        return True
