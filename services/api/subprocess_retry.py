"""
Subprocess Retry Wrapper for external tooling

Retry logic for the external processes the vault shells out to:
`solana transfer` for the on-chain legs and `snarkjs` for the optional
Groth16 proof backend.
"""

import json
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional

from services.api.logging_config import get_logger

logger = get_logger("subprocess_retry")

# stderr fragments that mean "try again"; anything else is retried with backoff too
_TRANSIENT_PATTERNS = (
    "blockhash not found",
    "invalid blockhash",
    "429",
    "rate limit",
    "connection",
    "timeout",
    "econnrefused",
    "enotfound",
)


class SubprocessRetryError(Exception):
    """Raised when subprocess fails after all retries"""
    pass


def _is_transient(stderr: str) -> bool:
    s = (stderr or "").lower()
    return any(p in s for p in _TRANSIENT_PATTERNS)


def run_with_retry(
    cmd: List[str],
    max_retries: int = 3,
    timeout: int = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    description: str = "Command",
    on_attempt: Optional[Callable[[int, str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> subprocess.CompletedProcess:
    """
    Run subprocess command with automatic retry logic.

    Features:
    - Exponential backoff between retries (1s, 2s, 4s)
    - Short fixed wait for expired blockhashes
    - Captures stdout/stderr for debugging

    Args:
        cmd: Command list (e.g., ["solana", "transfer", ...])
        max_retries: Maximum attempts (default: 3)
        timeout: Command timeout in seconds (default: 60)
        cwd: Working directory for command
        env: Environment variables
        description: Human-readable description for logging
        on_attempt: Optional callback called on each attempt: (attempt_num, status_msg)
        sleep: Sleep function (injected by tests)

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessRetryError: If command fails after all retries
    """
    last_error = ""

    for attempt in range(max_retries):
        status_msg = f"{description} (attempt {attempt + 1}/{max_retries})"
        logger.info(status_msg)
        if on_attempt:
            on_attempt(attempt + 1, status_msg)

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            last_error = f"timed out after {timeout}s"
            logger.warning(f"{description} {last_error}")
        except OSError as e:
            # missing binary etc. will not fix itself
            raise SubprocessRetryError(f"{description} could not be started: {e}") from e
        else:
            if result.returncode == 0:
                logger.info(f"{description} successful")
                return result

            last_error = (result.stderr or result.stdout or "")[:500]
            logger.warning(f"{description} failed with exit code {result.returncode}: {last_error}")

            stderr_lower = (result.stderr or "").lower()
            if "blockhash not found" in stderr_lower or "invalid blockhash" in stderr_lower:
                if attempt < max_retries - 1:
                    sleep(0.5)
                continue
            if not _is_transient(result.stderr):
                logger.warning(f"{description}: non-transient error, retrying anyway")

        if attempt < max_retries - 1:
            wait_time = 2 ** attempt
            logger.info(f"Retrying {description} in {wait_time}s")
            sleep(wait_time)

    raise SubprocessRetryError(
        f"{description} failed after {max_retries} attempts. Last error: {last_error}"
    )


def run_json_script_with_retry(
    cmd: List[str],
    max_retries: int = 3,
    timeout: int = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    description: str = "Script",
    runner: Callable[..., subprocess.CompletedProcess] = run_with_retry,
) -> dict:
    """
    Run a command whose stdout is a JSON document and parse it.

    Raises:
        SubprocessRetryError: If command fails after all retries or prints non-JSON
    """
    result = runner(
        cmd=cmd,
        max_retries=max_retries,
        timeout=timeout,
        cwd=cwd,
        env=env,
        description=description,
    )

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise SubprocessRetryError(
            f"Failed to parse {description} output as JSON: {e}\n"
            f"Output: {result.stdout[:500]}"
        ) from e
