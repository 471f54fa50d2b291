"""Shell step tool: runs a command in a subprocess."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..context import StepContext
from ..interpolation import substitute_variables
from ..models import ShellStep
from ..models import Step
from .base import Tool
from .base import ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ShellOutput:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    exit_code: int


class ShellTool(Tool):
    kind = "shell"

    def __init__(self, name: str = "default"):
        super().__init__(name)
        self._processes: set[asyncio.subprocess.Process] = set()

    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        """
        Run ``step.command`` with {{variable}} substitution.

        Raises:
            ValueError: If the command cannot start, or exits non-zero
        """
        assert isinstance(step, ShellStep), "Shell tool requires a shell step"

        command = substitute_variables(step.command, context.variables)

        if step.cwd:
            cwd = Path(substitute_variables(step.cwd, context.variables))
            if not cwd.is_absolute():
                cwd = context.working_dir / cwd
            if not cwd.is_dir():
                raise ValueError(f"Step '{step.name}': cwd is not a directory: {cwd}")
        else:
            cwd = context.working_dir

        if context.dry_run:
            logger.info(f"[dry run] Step '{step.name}' would run: {command}")
            return ToolResult(output={"command": command, "dry_run": True})

        env = os.environ.copy()
        for key, value in step.environment.items():
            env[key] = substitute_variables(str(value), context.variables)

        result = await self._run(command, cwd, env, step.name)

        if result.exit_code != 0:
            error_msg = f"command failed with exit code {result.exit_code}"
            if result.stderr.strip():
                error_msg += f"\nstderr: {result.stderr.strip()}"
            raise ValueError(error_msg)

        exported = {}
        if step.output_var:
            exported[step.output_var] = result.stdout.strip()
        if step.exit_code_var:
            exported[step.exit_code_var] = result.exit_code

        return ToolResult(
            output={"stdout": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code},
            variables=exported,
        )

    async def _run(self, command: str, cwd: Path, env: dict[str, str], step_name: str) -> ShellOutput:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
            )
        except OSError as e:
            raise ValueError(f"failed to execute command: {e}") from e

        self._processes.add(process)
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            # Timeout or cancellation: do not leave the child running
            await self._kill(process)
            raise
        finally:
            self._processes.discard(process)

        logger.debug(f"Step '{step_name}' command exited with {process.returncode}")
        return ShellOutput(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            exit_code=process.returncode or 0,
        )

    async def cleanup(self) -> None:
        for process in list(self._processes):
            await self._kill(process)
        await super().cleanup()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
