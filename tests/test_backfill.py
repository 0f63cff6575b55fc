import asyncio
import logging
import sys

import pytest

from contract_indexer.backfill import BackfillDispatcher
from contract_indexer.errors import BackfillFailed


def py(code):
    return [sys.executable, "-c", code]


def test_success_forwards_output(caplog):
    caplog.set_level(logging.INFO, logger="contract_indexer.backfill")
    worker = BackfillDispatcher(py("import sys; print('ids', *sys.argv[1:]); print('done')"))
    assert asyncio.run(worker.run([3, 5])) == 0
    lines = [r.getMessage() for r in caplog.records]
    assert "[backfill] stdout: ids 3 5" in lines
    assert "[backfill] stdout: done" in lines


def test_stderr_does_not_decide_the_outcome(caplog):
    caplog.set_level(logging.INFO, logger="contract_indexer.backfill")
    worker = BackfillDispatcher(py("import sys; sys.stderr.write('warming up\\n')"))
    assert asyncio.run(worker.run([1])) == 0
    assert "[backfill] stderr: warming up" in [r.getMessage() for r in caplog.records]


def test_non_zero_exit():
    worker = BackfillDispatcher(py("import sys; sys.exit(3)"))
    with pytest.raises(BackfillFailed) as ei:
        asyncio.run(worker.run([1]))
    assert ei.value.exit_status == 3


def test_missing_program():
    worker = BackfillDispatcher(["/nonexistent/backfill-worker"])
    with pytest.raises(BackfillFailed) as ei:
        asyncio.run(worker.run([1]))
    assert ei.value.exit_status is None


def test_dispatch_does_not_wait():
    worker = BackfillDispatcher(py("import time; time.sleep(0.2)"))

    async def go():
        task = worker.dispatch([1, 2])
        assert not task.done()
        return await task

    assert asyncio.run(go()) == 0


def test_dispatch_reports_failure(caplog):
    caplog.set_level(logging.INFO, logger="contract_indexer.backfill")
    worker = BackfillDispatcher(py("raise SystemExit(4)"))

    async def go():
        task = worker.dispatch([1])
        with pytest.raises(BackfillFailed):
            await task
        await asyncio.sleep(0)

    asyncio.run(go())
    assert any("failed" in r.getMessage() and "4" in r.getMessage() for r in caplog.records)


def test_output_after_an_overlong_line_is_still_forwarded(caplog):
    caplog.set_level(logging.INFO, logger="contract_indexer.backfill")
    worker = BackfillDispatcher(py(
        "import sys; sys.stdout.write('x' * (2 << 20) + '\\n'); print('after-long-line')"
    ))
    assert asyncio.run(worker.run([1])) == 0
    messages = [r.getMessage() for r in caplog.records]
    assert "[backfill] stdout: after-long-line" in messages
    assert any(r.levelno == logging.WARNING for r in caplog.records)


def test_dispatched_task_is_held_until_it_finishes():
    from contract_indexer import backfill

    worker = BackfillDispatcher(py("pass"))

    async def go():
        task = worker.dispatch([1])
        assert task in backfill.RUNNING
        await task
        await asyncio.sleep(0)
        return task

    task = asyncio.run(go())
    assert task not in backfill.RUNNING
