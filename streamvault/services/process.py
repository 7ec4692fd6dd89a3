"""
ffmpeg process execution.

run_command streams the child's combined output through a bounded ring
buffer (only the tail is kept for diagnostics) and reports the outcome as a
CommandResult instead of raising. FFmpegRunner adds the concurrency bound
and maps failed results onto StorageError / ExternalToolError.
"""
import logging
import queue as thread_queue
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from ..core.config import settings
from ..core.exceptions import ExternalToolError, StorageError

logger = logging.getLogger(__name__)

OUTPUT_BUFFER_LINES = 100
OUTPUT_TAIL_LINES = 30


@dataclass
class CommandResult:
    args: List[str]
    return_code: int
    output: str = ""
    timed_out: bool = False
    launch_error: Optional[OSError] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.launch_error is None and not self.timed_out and self.return_code == 0


def run_command(cmd: Sequence[str], cwd: Optional[str] = None, timeout: Optional[float] = None) -> CommandResult:
    """
    Run a command, keeping only the last lines of its output.

    Args:
        cmd: Argument vector
        cwd: Working directory for the child
        timeout: Maximum execution time in seconds (None = no limit)

    Returns:
        CommandResult; never raises for launch failures or timeouts
    """
    args = [str(a) for a in cmd]
    output_buffer = thread_queue.Queue(maxsize=OUTPUT_BUFFER_LINES)

    def stream_output(pipe, q):
        try:
            for line in iter(pipe.readline, ''):
                if q.full():
                    try:
                        q.get_nowait()
                    except thread_queue.Empty:
                        pass
                q.put(line)
        finally:
            pipe.close()

    try:
        process = subprocess.Popen(
            args,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace"
        )
    except OSError as e:
        logger.error(f"Failed to launch {args[0]}: {e}")
        return CommandResult(args=args, return_code=-1, launch_error=e)

    thread = threading.Thread(target=stream_output, args=(process.stdout, output_buffer))
    thread.daemon = True
    thread.start()

    timed_out = False
    try:
        return_code = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        return_code = process.wait()
        timed_out = True

    thread.join(timeout=1)

    collected = []
    while not output_buffer.empty():
        try:
            collected.append(output_buffer.get_nowait())
        except thread_queue.Empty:
            break

    output = "".join(collected[-OUTPUT_TAIL_LINES:])
    if timed_out:
        output += f"\nProcess timed out after {timeout}s"
    return CommandResult(args=args, return_code=return_code, output=output, timed_out=timed_out)


Runner = Callable[..., CommandResult]


class FFmpegRunner:
    """
    Bounded ffmpeg invoker shared by the transcode pipeline and the
    watermark renderer.

    At most `max_concurrent` ffmpeg processes run at once; further callers
    block until a slot frees up.
    """

    def __init__(
        self,
        binary: str = None,
        max_concurrent: int = None,
        timeout: float = None,
        runner: Runner = run_command
    ):
        self.binary = binary or settings.FFMPEG_BINARY
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_TRANSCODES
        self.timeout = timeout if timeout is not None else settings.FFMPEG_TIMEOUT_SECONDS
        self._runner = runner
        self._slots = threading.BoundedSemaphore(self.max_concurrent)

    def run(self, args: Sequence[str], cwd: Optional[str] = None) -> CommandResult:
        cmd = [self.binary, *[str(a) for a in args]]
        with self._slots:
            logger.debug(f"Running: {' '.join(cmd)}")
            return self._runner(cmd, cwd=cwd, timeout=self.timeout)

    def check(self, args: Sequence[str], action: str, cwd: Optional[str] = None) -> CommandResult:
        """
        Run ffmpeg and raise on failure.

        Raises:
            StorageError: ffmpeg could not be launched
            ExternalToolError: non-zero exit or timeout
        """
        result = self.run(args, cwd=cwd)
        if result.launch_error is not None:
            raise StorageError(f"Could not launch ffmpeg for {action}: {result.launch_error}") from result.launch_error
        if not result.ok:
            logger.error(f"ffmpeg {action} failed (exit code {result.return_code}): {result.output[-500:]}")
            raise ExternalToolError(action, result.return_code, result.output, result.args)
        return result
