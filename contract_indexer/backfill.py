# backfill.py
"""
Hands newly onboarded contract ids to the out-of-process backfill worker.

The worker gets the ids as positional arguments and signals success with exit
status 0. Its stdout/stderr are plain log lines, forwarded to our logger as
they arrive; they never influence the outcome.
"""
import asyncio
import logging
from typing import Iterable, Sequence, Set

from . import config
from .errors import BackfillFailed

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1 << 20

# the event loop only holds weak references to tasks
RUNNING: Set[asyncio.Task] = set()


async def _forward(stream: asyncio.StreamReader, label: str):
    while True:
        try:
            raw = await stream.readline()
        except ValueError as e:
            # line longer than STREAM_LIMIT; the reader has dropped the chunk, keep going
            logger.warning("[backfill] %s: %s", label, e)
            continue
        if not raw:
            break
        line = raw.decode("utf-8", "replace").rstrip()
        if line:
            logger.info("[backfill] %s: %s", label, line)


def _report(task: asyncio.Task):
    if task.cancelled():
        logger.warning("[backfill] cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("[backfill] failed: %s", exc)
    else:
        logger.info("[backfill] finished")


class BackfillDispatcher:
    def __init__(self, cmd: Sequence[str] = None):
        self.cmd = list(cmd if cmd is not None else config.BACKFILL_CMD)

    def dispatch(self, contract_ids: Iterable[int]) -> asyncio.Task:
        """Start the worker without waiting for it; the task resolves to 0 or raises BackfillFailed."""
        task = asyncio.ensure_future(self.run(list(contract_ids)))
        RUNNING.add(task)
        task.add_done_callback(RUNNING.discard)
        task.add_done_callback(_report)
        return task

    async def run(self, contract_ids: Sequence[int]) -> int:
        args = [*self.cmd, *(str(i) for i in contract_ids)]
        logger.info("[backfill] launching %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise BackfillFailed(None, str(e)) from e

        await asyncio.gather(_forward(proc.stdout, "stdout"), _forward(proc.stderr, "stderr"))
        code = await proc.wait()
        if code != 0:
            raise BackfillFailed(code)
        return code
