"""
CLI authentication status reported with every heartbeat.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from .git_ops import run_command

logger = logging.getLogger("system_status")

CHECK_TIMEOUT_SECONDS = 10

CLAUDE_CREDENTIAL_FILES = (".claude/oauth.json", ".claude/.credentials.json")
GEMINI_CREDENTIAL_FILES = (".gemini/credentials.json", ".gemini/settings.json", ".gemini/oauth_credentials.json")
_CLAUDE_LOGGED_OUT = ("not authenticated", "Please log in")


def _any_readable(home: Path, candidates) -> bool:
    return any((home / relative).is_file() for relative in candidates)


async def check_claude_auth(home: Path) -> bool:
    exit_code, stdout, stderr = await run_command(["claude", "doctor"], timeout=CHECK_TIMEOUT_SECONDS)
    if exit_code == 0:
        output = stdout + stderr
        return not any(marker in output for marker in _CLAUDE_LOGGED_OUT)
    # CLI missing or hung: fall back to stored OAuth credentials
    return _any_readable(home, CLAUDE_CREDENTIAL_FILES)


async def check_gemini_auth(home: Path) -> bool:
    if not _any_readable(home, GEMINI_CREDENTIAL_FILES):
        return False
    exit_code, _, stderr = await run_command(["gemini", "--version"], timeout=CHECK_TIMEOUT_SECONDS)
    if exit_code != 0:
        logger.debug(f"gemini --version failed ({exit_code}): {stderr.strip()[:200]}")
    return exit_code == 0


async def check_auth_status(home: Optional[Path] = None) -> Dict[str, bool]:
    """Return {"claude": bool, "gemini": bool}."""
    home = home or Path.home()
    status = {
        "claude": await check_claude_auth(home),
        "gemini": await check_gemini_auth(home),
    }
    logger.debug(f"Auth status: {status}")
    return status
