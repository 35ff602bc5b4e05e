"""
Bounded-timeout execution of external discovery tools.

run() always returns text. A hung tool must never hold the caller past its
timeout, so the process's natural completion is raced against a timer and
whichever finishes first supplies the result. Spawn failures come back as
text too, which gives callers one uniform contract to parse.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from .completion import SingleCompletion

logger = logging.getLogger(__name__)

NO_OUTPUT = "No output"


def timeout_message(timeout: float) -> str:
    return f"Operation timed out after {timeout:g} seconds"


class ExternalToolRunner:
    """
    Runs external commands with a hard wall-clock timeout.

    Timed-out processes are killed but not awaited; the reader task that
    reaps them is tracked until it finishes and can be drained with
    aclose().
    """

    def __init__(self, read_chunk_size: int = 4096):
        self.read_chunk_size = read_chunk_size
        self._background: set[asyncio.Task] = set()

    async def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        timeout: float = 10.0,
        partial_on_timeout: bool = False,
    ) -> str:
        """
        Run a command and return its combined stdout/stderr.

        Args:
            command: Executable path or name
            arguments: Command arguments
            timeout: Seconds before the process is killed
            partial_on_timeout: Return output captured so far instead of the
                timeout sentinel. Used for tools that browse until killed.

        Returns:
            Decoded output, "No output", the timeout sentinel, or
            "Error: <reason>" when the command could not be launched.
        """
        loop = asyncio.get_running_loop()
        completion: SingleCompletion[str] = SingleCompletion(loop)
        captured = bytearray()

        try:
            process = await asyncio.create_subprocess_exec(
                command, *arguments,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to launch {command}: {e}")
            return f"Error: {e}"

        reader = loop.create_task(self._collect(process, captured, completion))
        self._track(reader)

        def _on_timeout() -> None:
            result = timeout_message(timeout)
            if partial_on_timeout and captured:
                result = captured.decode("utf-8", errors="replace")
            if completion.settle(result):
                logger.warning(f"Command timed out after {timeout:g}s: {command}")
                _kill(process)

        timer = loop.call_later(timeout, _on_timeout)
        try:
            return await completion.wait()
        finally:
            timer.cancel()
            if process.returncode is None:
                _kill(process)

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        captured: bytearray,
        completion: SingleCompletion[str],
    ) -> None:
        """Read output until EOF, then settle with the full text."""
        try:
            assert process.stdout is not None
            while True:
                chunk = await process.stdout.read(self.read_chunk_size)
                if not chunk:
                    break
                captured.extend(chunk)
            await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading process output: {e}")
            completion.settle(f"Error: {e}")
            return

        output = captured.decode("utf-8", errors="replace")
        completion.settle(output if output else NO_OUTPUT)

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @property
    def pending(self) -> int:
        """Reader tasks still waiting on a process."""
        return len(self._background)

    async def aclose(self, timeout: Optional[float] = 5.0) -> None:
        """Wait for outstanding reader tasks, cancelling any that linger."""
        if not self._background:
            return
        tasks = list(self._background)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
