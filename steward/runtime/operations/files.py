"""Built-in operations over files inside the project root."""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..error_codes import ErrorCode, OperationFailure
from ..models.operation import EffectClass
from .executor import OperationContext
from .registry import OperationAnalysis, OperationDefinition


def _resolve_in_project(project_root: Path, rel: str) -> Path:
    rel_path = Path(rel)
    if rel_path.is_absolute():
        raise PermissionError("Path must be relative to project root.")
    candidate = (project_root / rel_path).resolve()
    project_root_resolved = project_root.resolve()
    if candidate != project_root_resolved and project_root_resolved not in candidate.parents:
        raise PermissionError("Path escapes project root.")
    return candidate


def _require_path(args: dict[str, Any], key: str = "path") -> str:
    raw = args.get(key)
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"Missing or invalid '{key}' (expected non-empty string).")
    return raw.strip()


def _require_text(args: dict[str, Any], key: str) -> str:
    raw = args.get(key)
    if not isinstance(raw, str):
        raise ValueError(f"Missing or invalid '{key}' (expected string).")
    return raw


def _unified_diff(path: str, before: str, after: str) -> str:
    lines = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    )
    return "".join(lines)


def _not_doable(e: Exception) -> OperationAnalysis:
    return OperationAnalysis(analysis=str(e) or type(e).__name__, doable=False)


@dataclass(frozen=True, slots=True)
class FileReadOperation:
    max_chars: int = 200_000
    name: str = "file_read"
    description: str = "Read a UTF-8 text file relative to the project root."

    def effect_for(self, args: dict[str, Any]) -> EffectClass:
        del args
        return EffectClass.READ

    def analyze(self, *, args: dict[str, Any], context: OperationContext) -> OperationAnalysis:
        try:
            path = _require_path(args)
            target = _resolve_in_project(context.project_root, path)
        except (ValueError, PermissionError) as e:
            return _not_doable(e)
        if not target.is_file():
            return OperationAnalysis(analysis=f"File not found: {path}", doable=False)
        return OperationAnalysis(analysis=f"Will read {path} ({target.stat().st_size} bytes).")

    def execute(self, *, args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        path = _require_path(args)
        target = _resolve_in_project(context.project_root, path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        text = target.read_text(encoding="utf-8", errors="replace")
        truncated = len(text) > self.max_chars
        return {"path": path, "content": text[: self.max_chars], "truncated": truncated}


@dataclass(frozen=True, slots=True)
class FileListOperation:
    max_entries: int = 500
    name: str = "file_list"
    description: str = "List entries of a directory relative to the project root."

    def effect_for(self, args: dict[str, Any]) -> EffectClass:
        del args
        return EffectClass.READ

    def analyze(self, *, args: dict[str, Any], context: OperationContext) -> OperationAnalysis:
        path = str(args.get("path") or ".")
        try:
            target = _resolve_in_project(context.project_root, path)
        except PermissionError as e:
            return _not_doable(e)
        if not target.is_dir():
            return OperationAnalysis(analysis=f"Directory not found: {path}", doable=False)
        return OperationAnalysis(analysis=f"Will list {path}.")

    def execute(self, *, args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        path = str(args.get("path") or ".")
        target = _resolve_in_project(context.project_root, path)
        if not target.is_dir():
            raise FileNotFoundError(f"Directory not found: {path}")
        entries = sorted(
            (p.name + "/" if p.is_dir() else p.name)
            for p in target.iterdir()
        )
        return {"path": path, "entries": entries[: self.max_entries], "truncated": len(entries) > self.max_entries}


@dataclass(frozen=True, slots=True)
class FileCreateOperation:
    project_root: Path | None = None
    name: str = "file_create"
    description: str = "Create (or overwrite) a text file relative to the project root."

    def effect_for(self, args: dict[str, Any]) -> EffectClass:
        # Writing over an existing file is an update, not a create.
        path = args.get("path")
        if self.project_root is not None and isinstance(path, str) and path.strip():
            try:
                if _resolve_in_project(self.project_root, path.strip()).exists():
                    return EffectClass.UPDATE
            except PermissionError:
                pass
        return EffectClass.CREATE

    def analyze(self, *, args: dict[str, Any], context: OperationContext) -> OperationAnalysis:
        try:
            path = _require_path(args)
            content = _require_text(args, "content")
            target = _resolve_in_project(context.project_root, path)
        except (ValueError, PermissionError) as e:
            return _not_doable(e)
        if target.is_dir():
            return OperationAnalysis(analysis=f"Path is a directory: {path}", doable=False)
        if target.exists():
            before = target.read_text(encoding="utf-8", errors="replace")
            diff = _unified_diff(path, before, content)
            return OperationAnalysis(analysis=f"Will overwrite {path}:\n{diff}" if diff else f"{path} is unchanged.")
        return OperationAnalysis(analysis=f"Will create {path} ({len(content)} chars).")

    def execute(self, *, args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        path = _require_path(args)
        content = _require_text(args, "content")
        target = _resolve_in_project(context.project_root, path)
        if target.is_dir():
            raise IsADirectoryError(f"Path is a directory: {path}")
        existed = target.exists()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return {"path": path, "created": not existed, "chars": len(content)}


@dataclass(frozen=True, slots=True)
class FileEditOperation:
    name: str = "file_edit"
    description: str = "Replace exactly one occurrence of `old_text` with `new_text` in a file."

    def effect_for(self, args: dict[str, Any]) -> EffectClass:
        del args
        return EffectClass.UPDATE

    def _apply(self, *, args: dict[str, Any], project_root: Path) -> tuple[str, Path, str, str]:
        path = _require_path(args)
        old_text = _require_text(args, "old_text")
        new_text = _require_text(args, "new_text")
        if not old_text:
            raise ValueError("'old_text' must not be empty.")
        target = _resolve_in_project(project_root, path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        before = target.read_text(encoding="utf-8")
        count = before.count(old_text)
        if count == 0:
            raise OperationFailure(f"Text to replace not found in {path}.", code=ErrorCode.BAD_REQUEST)
        if count > 1:
            raise OperationFailure(
                f"Text to replace occurs {count} times in {path}; include more context.",
                code=ErrorCode.BAD_REQUEST,
            )
        return path, target, before, before.replace(old_text, new_text, 1)

    def analyze(self, *, args: dict[str, Any], context: OperationContext) -> OperationAnalysis:
        try:
            path, _target, before, after = self._apply(args=args, project_root=context.project_root)
        except (ValueError, PermissionError, FileNotFoundError, OperationFailure) as e:
            return _not_doable(e)
        return OperationAnalysis(analysis=_unified_diff(path, before, after) or f"{path} is unchanged.")

    def execute(self, *, args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        path, target, _before, after = self._apply(args=args, project_root=context.project_root)
        target.write_text(after, encoding="utf-8")
        return {"path": path, "replacements": 1}


@dataclass(frozen=True, slots=True)
class FileDeleteOperation:
    name: str = "file_delete"
    description: str = "Delete a file relative to the project root."

    def effect_for(self, args: dict[str, Any]) -> EffectClass:
        del args
        return EffectClass.DELETE

    def analyze(self, *, args: dict[str, Any], context: OperationContext) -> OperationAnalysis:
        try:
            path = _require_path(args)
            target = _resolve_in_project(context.project_root, path)
        except (ValueError, PermissionError) as e:
            return _not_doable(e)
        if not target.is_file():
            return OperationAnalysis(analysis=f"File not found: {path}", doable=False)
        return OperationAnalysis(analysis=f"Will delete {path}.")

    def execute(self, *, args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        path = _require_path(args)
        target = _resolve_in_project(context.project_root, path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        target.unlink()
        return {"path": path, "deleted": True}


def file_operations(project_root: Path | None = None) -> list[OperationDefinition]:
    return [
        FileReadOperation(),
        FileListOperation(),
        FileCreateOperation(project_root=project_root),
        FileEditOperation(),
        FileDeleteOperation(),
    ]
