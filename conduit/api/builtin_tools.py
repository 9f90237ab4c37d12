"""Built-in tools: run_code.

run_code executes Python source in a separate interpreter inside the
workspace directory.  It is privileged: only agents with run_code in
their enabled tools are offered it, and the dispatcher refuses it for
everyone else.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Any

from conduit.api.schemas import FunctionDefinition
from conduit.api.tools import ToolContext, ToolDispatcher
from conduit.config import Settings
from conduit.errors import ToolExecutionError

logger = logging.getLogger(__name__)

# Limits
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB

RUN_CODE_DESCRIPTION = (
    "Execute Python code in an isolated interpreter and return what it prints. "
    "Use print() for any value you need to see. Each call starts a fresh process; "
    "files written to the working directory persist between calls."
)

RUN_CODE_DEFINITION = FunctionDefinition(
    name="run_code",
    description=RUN_CODE_DESCRIPTION,
    parameters={
        "type": "object",
        "properties": {
            "code": {
                "type": "string",
                "description": "Python source code to execute.",
            },
            "why": {
                "type": "string",
                "description": "Short explanation of why the code is being run.",
            },
        },
        "required": ["code"],
    },
)


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


def _child_env(permissions: tuple[str, ...]) -> dict[str, str]:
    """Environment for the child process. Only ``env`` grants the parent's."""
    if "env" in permissions:
        return dict(os.environ)
    return {"PATH": os.environ.get("PATH", ""), "PYTHONIOENCODING": "utf-8"}


async def run_code(
    code: str,
    *,
    workspace_dir: str,
    timeout: float,
    permissions: tuple[str, ...] = (),
) -> str:
    """Run Python source and return combined output text."""
    if not code.strip():
        raise ToolExecutionError("run_code", "run_code error: code is required")

    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)
    script = workspace / f"coderun_{uuid.uuid4().hex[:12]}.py"
    script.write_text(code, encoding="utf-8")

    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-I",
            str(script),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
            env=_child_env(permissions),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return f"run_code error: execution timed out after {timeout:g}s"
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
    finally:
        script.unlink(missing_ok=True)

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    return "\n".join(parts) if parts else "(no output)"


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register built-in tools with settings captured in closures."""

    async def _run_code(args: dict[str, Any], ctx: ToolContext) -> str:
        code = str(args.get("code") or "")
        if args.get("why"):
            logger.info("run_code for agent %s: %s", ctx.agent_id, args["why"])
        return await run_code(
            code,
            workspace_dir=settings.workspace_dir,
            timeout=settings.code_run_timeout,
            permissions=ctx.permissions,
        )

    dispatcher.register(RUN_CODE_DEFINITION, _run_code, privileged=True)
    logger.info("Built-in tools registered (workspace=%s)", settings.workspace_dir)
