"""
Cluster Supervisor — keeps N worker processes running.

Each worker process runs its own event loop with a full ChatPipeline; they
share nothing but the queue store, so scaling out is adding processes (here)
or hosts (run the supervisor on each). A worker that exits for any reason is
restarted after `restart_delay` seconds until the supervisor shuts down.
"""
from __future__ import annotations

import asyncio
import multiprocessing
import signal
import time
import structlog
from typing import Any, Callable, Optional

from config.settings import load_settings

logger = structlog.get_logger()


async def run_worker(config_path: Optional[str] = None, worker_index: int = 0,
                     stop_event: Optional[asyncio.Event] = None):
    """Run one pipeline until SIGTERM/SIGINT (or stop_event) arrives."""
    from workers.pipeline import ChatPipeline

    settings = load_settings(config_path)
    pipeline = ChatPipeline(settings)
    stop = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # not on the main thread / platform without signal support

    await pipeline.start()
    logger.info("worker_started", worker=worker_index)
    try:
        await stop.wait()
    finally:
        await pipeline.stop()
        logger.info("worker_stopped", worker=worker_index)


def worker_main(config_path: Optional[str], worker_index: int):
    """Entry point of a worker process."""
    from workers.cli import configure_logging
    configure_logging(load_settings(config_path).debug)
    asyncio.run(run_worker(config_path, worker_index))


class ClusterSupervisor:
    """
    Spawns `worker_count` processes running `target(*args, index)` and
    restarts any that exit after `restart_delay` seconds.
    """

    def __init__(
        self,
        worker_count: int = 1,
        restart_delay: float = 1.0,
        target: Callable[..., Any] = worker_main,
        args: tuple = (),
        poll_interval: float = 0.5,
        context: Optional[Any] = None,
    ):
        self.worker_count = max(worker_count, 1)
        self.restart_delay = restart_delay
        self.target = target
        self.args = args
        self.poll_interval = poll_interval
        self._ctx = context or multiprocessing.get_context("spawn")
        self.workers: dict[int, multiprocessing.Process] = {}
        self._exited_at: dict[int, float] = {}
        self.restarts = 0
        self._running = False

    def _spawn(self, index: int) -> multiprocessing.Process:
        proc = self._ctx.Process(target=self.target, args=(*self.args, index), name=f"chat-worker-{index}")
        proc.start()
        self.workers[index] = proc
        self._exited_at.pop(index, None)
        logger.info("worker_spawned", worker=index, pid=proc.pid)
        return proc

    def start(self):
        self._running = True
        for index in range(self.worker_count):
            self._spawn(index)
        logger.info("cluster_started", workers=self.worker_count)

    def check_workers(self, now: Optional[float] = None) -> int:
        """Restart workers that exited at least restart_delay ago. Returns restarts made."""
        if not self._running:
            return 0
        now = time.monotonic() if now is None else now
        restarted = 0
        for index, proc in list(self.workers.items()):
            if proc.is_alive():
                continue
            if index not in self._exited_at:
                self._exited_at[index] = now
                logger.warning("worker_exited", worker=index, pid=proc.pid, exitcode=proc.exitcode,
                               restart_in=self.restart_delay)
            if now - self._exited_at[index] >= self.restart_delay:
                self._spawn(index)
                self.restarts += 1
                restarted += 1
        return restarted

    def run(self):
        """Supervise until SIGTERM/SIGINT."""
        def _request_stop(signum, frame):
            logger.info("cluster_stop_requested", signal=signum)
            self._running = False

        signal.signal(signal.SIGTERM, _request_stop)
        signal.signal(signal.SIGINT, _request_stop)

        self.start()
        try:
            while self._running:
                self.check_workers()
                time.sleep(self.poll_interval)
        finally:
            self.shutdown()

    def shutdown(self, timeout: float = 10.0):
        self._running = False
        for proc in self.workers.values():
            if proc.is_alive():
                proc.terminate()
        deadline = time.monotonic() + timeout
        for index, proc in self.workers.items():
            proc.join(max(deadline - time.monotonic(), 0))
            if proc.is_alive():
                logger.warning("worker_kill", worker=index, pid=proc.pid)
                proc.kill()
                proc.join()
        logger.info("cluster_stopped", restarts=self.restarts)
