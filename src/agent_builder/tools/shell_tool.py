"""
Shell Command Tool - Sandboxed execution of shell commands.

Commands run inside a sandbox directory, must start with an allowlisted
program, may not match any blocked pattern and are killed after a timeout.
"""

import asyncio
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .base import Tool, ToolParameter, ToolResult

logger = structlog.get_logger()


@dataclass
class ShellConfig:
    """Configuration for shell command execution."""

    sandbox_dir: str = "~/.agent-builder/sandbox"
    timeout_seconds: int = 10
    max_output_lines: int = 200
    max_output_chars: int = 10000

    allowed_commands: set[str] = field(default_factory=lambda: {
        "ls", "pwd", "whoami", "date", "uptime", "df", "du",
        "cat", "head", "tail", "wc", "grep", "find", "which",
        "echo", "env", "printenv", "uname", "hostname",
        "curl", "git", "python", "python3", "node",
        "mkdir", "touch", "cp", "mv", "rm",
        "tar", "gzip", "gunzip", "zip", "unzip",
        "jq", "sed", "awk", "sort", "uniq", "cut", "tr", "diff",
    })

    blocked_patterns: list[str] = field(default_factory=lambda: [
        r"rm\s+-rf\s+/",
        r"rm\s+-rf\s+~",
        r">\s*/dev/",
        r"mkfs",
        r"dd\s+if=",
        r":\(\)\s*\{\s*:\|:&\s*\};:",
        r"chmod\s+777",
        r"curl.*\|\s*(ba)?sh",
        r"wget.*\|\s*(ba)?sh",
        r"eval\s+",
        r"`.*`",
        r"\$\(.*\)",
    ])


class ShellExecutor:
    """Executes shell commands with safety controls."""

    def __init__(self, config: ShellConfig | None = None):
        self.config = config or ShellConfig()
        self.sandbox = Path(self.config.sandbox_dir).expanduser().resolve()

    def check_command(self, command: str) -> str | None:
        """Return the reason a command is refused, or None if allowed."""
        for pattern in self.config.blocked_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return "Command contains blocked pattern"

        try:
            parts = shlex.split(command)
        except ValueError as e:
            return f"Invalid command syntax: {e}"

        if not parts:
            return "Empty command"

        base_command = Path(parts[0]).name
        if base_command not in self.config.allowed_commands:
            return f"Command '{base_command}' is not in the allowlist"

        return None

    def resolve_working_dir(self, working_dir: str | None) -> Path | None:
        """Resolve a sandbox-relative directory; None if it escapes the sandbox."""
        cwd = (self.sandbox / working_dir).resolve() if working_dir else self.sandbox
        if cwd != self.sandbox and self.sandbox not in cwd.parents:
            return None
        return cwd

    async def execute(
        self,
        command: str,
        working_dir: str | None = None,
    ) -> tuple[int, str, str]:
        """
        Execute a shell command.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        cwd = self.resolve_working_dir(working_dir)
        if cwd is None:
            raise PermissionError("Directory traversal not allowed")

        cwd.mkdir(parents=True, exist_ok=True)

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=os.environ.copy(),
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {self.config.timeout_seconds} seconds")

        return (
            process.returncode if process.returncode is not None else -1,
            self._truncate_output(stdout.decode("utf-8", errors="replace")),
            self._truncate_output(stderr.decode("utf-8", errors="replace")),
        )

    def _truncate_output(self, output: str) -> str:
        """Truncate output to configured limits."""
        lines = output.split("\n")

        if len(lines) > self.config.max_output_lines:
            shown = lines[:self.config.max_output_lines]
            output = "\n".join(shown) + f"\n\n... (truncated, {len(shown)} lines shown)"

        if len(output) > self.config.max_output_chars:
            output = output[:self.config.max_output_chars] + "\n\n... (truncated)"

        return output


def create_shell_tool(config: ShellConfig | None = None) -> Tool:
    """Create the ``shell`` tool bound to one executor."""
    executor = ShellExecutor(config)

    async def run_command(command: str, working_dir: str = "") -> ToolResult:
        reason = executor.check_command(command)
        if reason:
            logger.warning("Shell command blocked", command=command, reason=reason)
            return ToolResult(success=False, output=f"Command blocked: {reason}", error=reason)

        try:
            return_code, stdout, stderr = await executor.execute(command, working_dir or None)
        except (PermissionError, TimeoutError, OSError) as e:
            logger.error("Shell command failed", command=command, error=str(e))
            return ToolResult(success=False, output=f"Command failed: {e}", error=str(e))

        data = {"stdout": stdout, "stderr": stderr, "exit_code": return_code}
        if return_code != 0:
            return ToolResult(
                success=False,
                output=stderr or stdout or f"Command exited with code {return_code}",
                data=data,
                error=f"Exit code {return_code}",
            )

        return ToolResult(
            success=True,
            output=stdout or stderr or "Command completed with no output",
            data=data,
        )

    return Tool(
        name="shell",
        description=(
            "Execute shell commands in a sandboxed directory. Use for running scripts, "
            "CLI tools, or system commands. Only allowlisted commands are permitted."
        ),
        parameters=[
            ToolParameter(
                name="command",
                param_type="string",
                description="The shell command to execute",
                required=True,
            ),
            ToolParameter(
                name="working_dir",
                param_type="string",
                description="Working directory relative to the sandbox root",
                required=False,
            ),
        ],
        handler=run_command,
    )
