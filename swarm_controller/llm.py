"""
LLM CLI client.

The coding agents are driven through their command line tools in
non-interactive mode. The prompt is piped on stdin so long task contexts
never hit argument length limits.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .errors import ConfigurationError, LLMInvocationError, LLMTimeoutError

logger = logging.getLogger("llm")

DEFAULT_TIMEOUT_SECONDS = 10 * 60


class LLMClient:
    """Runs one prompt through the configured CLI and returns its raw stdout."""

    def __init__(
        self,
        provider: str = "claude",
        cli: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        if provider not in ("claude", "gemini"):
            raise ConfigurationError(f"LLM_PROVIDER must be 'claude' or 'gemini', got '{provider}'")
        self.provider = provider
        self.cli = cli or provider
        self.timeout_seconds = timeout_seconds

    def build_args(self) -> List[str]:
        if self.provider == "claude":
            return [self.cli, "-p", "--output-format", "json", "--dangerously-skip-permissions"]
        return [self.cli, "--yolo"]

    async def invoke(self, prompt: str, cwd: Optional[Path] = None) -> str:
        args = self.build_args()
        logger.info(f"Invoking {self.provider} CLI ({len(prompt)} chars) in {cwd or '.'}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ConfigurationError(f"LLM CLI not found: {self.cli}", {"provider": self.provider})

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode()), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"{self.provider} CLI timed out after {self.timeout_seconds}s")
            raise LLMTimeoutError(self.timeout_seconds)

        if process.returncode != 0:
            error = stderr.decode(errors="replace").strip() or stdout.decode(errors="replace").strip()
            logger.error(f"{self.provider} CLI exited with {process.returncode}: {error[:500]}")
            raise LLMInvocationError(error[:2000] or "no output", process.returncode)

        return stdout.decode(errors="replace")
