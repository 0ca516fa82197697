"""
File Operations Tool - read, write, list and delete files in a workspace.
"""

from pathlib import Path
from typing import Any

import structlog

from .base import BaseTool, ToolResult

logger = structlog.get_logger()


class FileTool(BaseTool):
    """Workspace-restricted file operations."""

    blocked_names = {".ssh", ".gnupg", ".aws", ".gcloud", "credentials"}

    def __init__(self, workspace_dir: str, protected_dirs: list[str] | None = None):
        self.workspace_dir = Path(workspace_dir).expanduser().resolve()
        # Directories the tool must never touch even when nested in the workspace
        self.protected_dirs = [Path(p).expanduser().resolve() for p in protected_dirs or []]

    @property
    def name(self) -> str:
        return "file"

    @property
    def description(self) -> str:
        return (
            "Read, write, list, or delete files within the workspace directory. "
            "Cannot access files outside the workspace."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "description": "Operation to perform",
                    "enum": ["read", "write", "list", "delete"],
                },
                "path": {
                    "type": "string",
                    "description": "File path relative to the workspace",
                },
                "content": {
                    "type": "string",
                    "description": "Content to write (write operation only)",
                },
            },
            "required": ["operation", "path"],
        }

    def _resolve(self, path: str) -> Path:
        """Resolve a workspace-relative path, refusing anything outside it."""
        resolved = (self.workspace_dir / path).resolve()
        if resolved != self.workspace_dir and self.workspace_dir not in resolved.parents:
            raise PermissionError(f"Access denied: {path} is outside the workspace")
        if any(part.lower() in self.blocked_names for part in resolved.parts):
            raise PermissionError(f"Access denied: {path}")
        for protected in self.protected_dirs:
            if resolved == protected or protected in resolved.parents:
                raise PermissionError(f"Access denied: {path} is reserved")
        return resolved

    async def execute(self, operation: str, path: str, content: str | None = None) -> ToolResult:
        try:
            target = self._resolve(path)
        except PermissionError as e:
            logger.warning("File access refused", path=path)
            return ToolResult(success=False, output=str(e), error="Access denied")

        try:
            if operation == "read":
                return self._read(target)
            if operation == "write":
                if content is None:
                    return ToolResult(
                        success=False,
                        output="Content parameter required for write operation",
                        error="Missing content",
                    )
                return self._write(target, content)
            if operation == "list":
                return self._list(target)
            if operation == "delete":
                return self._delete(target)
        except OSError as e:
            return ToolResult(success=False, output=f"File operation failed: {e}", error=str(e))

        return ToolResult(
            success=False,
            output=f"Unknown operation: {operation}",
            error="Invalid operation",
        )

    def _read(self, target: Path) -> ToolResult:
        text = target.read_text(encoding="utf-8")
        return ToolResult(
            success=True,
            output=text,
            data={"path": str(target), "size": len(text)},
        )

    def _write(self, target: Path, content: str) -> ToolResult:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return ToolResult(
            success=True,
            output=f"File written successfully ({len(content)} characters)",
            data={"path": str(target), "size": len(content)},
        )

    def _list(self, target: Path) -> ToolResult:
        entries = [
            {"name": entry.name, "type": "directory" if entry.is_dir() else "file"}
            for entry in sorted(target.iterdir())
        ]
        listing = "\n".join(
            f"{e['name']}/" if e["type"] == "directory" else e["name"] for e in entries
        )
        return ToolResult(
            success=True,
            output=listing or "(empty directory)",
            data={"path": str(target), "files": entries},
        )

    def _delete(self, target: Path) -> ToolResult:
        target.unlink()
        return ToolResult(
            success=True,
            output="File deleted successfully",
            data={"path": str(target)},
        )
