import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from app.config.settings import Settings
from app.logging.logger import Log
from app.scheduler.exceptions import TaskRejectedError


@dataclass
class _Task:
    future: Future[Any]
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]

    def run(self) -> None:
        if not self.future.set_running_or_notify_cancel():
            return
        try:
            result = self.fn(*self.args, **self.kwargs)
        except BaseException as exc:  # noqa: BLE001
            self.future.set_exception(exc)
        else:
            self.future.set_result(result)


class TransferExecutor:
    """Bounded thread pool for background transfers.

    Sizing follows the usual core/max/queue model:
      - ``core_size`` threads start with the pool and stay alive.
      - Tasks wait in a queue of at most ``queue_capacity`` entries.
      - Only when the queue is full are extra threads started, up to
        ``max_size``; those exit after ``keep_alive_seconds`` without work.
      - If the queue is still full, ``submit`` waits up to
        ``submit_timeout_seconds`` and then raises TaskRejectedError.

    ``shutdown`` stops intake, lets queued tasks drain, and joins the workers.
    """

    def __init__(
        self,
        core_size: int = 5,
        max_size: int = 10,
        queue_capacity: int = 100,
        submit_timeout_seconds: float = 5.0,
        keep_alive_seconds: float = 60.0,
        name_prefix: str = "FileUpload",
    ) -> None:
        if core_size < 1:
            raise ValueError("core_size must be at least 1")
        if max_size < core_size:
            raise ValueError("max_size must be greater than or equal to core_size")
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be at least 1")

        self._core_size = core_size
        self._max_size = max_size
        self._submit_timeout = submit_timeout_seconds
        self._keep_alive = keep_alive_seconds
        self._name_prefix = name_prefix
        self._queue: queue.Queue[_Task | None] = queue.Queue(maxsize=queue_capacity)
        self._threads: set[threading.Thread] = set()
        self._lock = threading.Lock()
        self._intake_lock = threading.Lock()
        self._counter = 0
        self._shutdown = False

        with self._lock:
            for _ in range(core_size):
                self._start_thread()
        Log.info(
            f"Transfer executor started: core={core_size}, max={max_size}, "
            f"queue={queue_capacity}"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransferExecutor":
        return cls(
            core_size=settings.executor_core_size,
            max_size=settings.executor_max_size,
            queue_capacity=settings.executor_queue_capacity,
            submit_timeout_seconds=settings.executor_submit_timeout_seconds,
            keep_alive_seconds=settings.executor_keep_alive_seconds,
        )

    @property
    def pool_size(self) -> int:
        with self._lock:
            return len(self._threads)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        """Schedule ``fn(*args, **kwargs)`` and return its Future.

        The enqueue happens under the intake lock that ``shutdown`` takes, so
        an accepted task is always queued ahead of the stop markers.

        Raises:
            TaskRejectedError: if the executor is shut down, or the queue stayed
                full for the whole submit timeout.
        """
        task = _Task(Future(), fn, args, kwargs)
        deadline = time.monotonic() + self._submit_timeout
        if not self._intake_lock.acquire(timeout=self._submit_timeout):
            raise self._rejected()
        try:
            if self._shutdown:
                raise TaskRejectedError("Transfer executor is shut down")
            try:
                self._queue.put_nowait(task)
                return task.future
            except queue.Full:
                self._grow()
            try:
                self._queue.put(task, timeout=max(0.0, deadline - time.monotonic()))
            except queue.Full:
                raise self._rejected() from None
            return task.future
        finally:
            self._intake_lock.release()

    def shutdown(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop accepting tasks; queued tasks still run before workers exit.

        Waits for a submit that is blocked on a full queue to finish first.
        """
        with self._intake_lock, self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            threads = list(self._threads)

        Log.info(f"Transfer executor shutting down, {self._queue.qsize()} task(s) queued")
        for _ in threads:
            self._queue.put(None)
        if not wait:
            return
        for thread in threads:
            thread.join(timeout)
            if thread.is_alive():
                Log.warning(f"Worker {thread.name} still running after shutdown timeout")

    def __enter__(self) -> "TransferExecutor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)

    def _grow(self) -> None:
        with self._lock:
            if len(self._threads) < self._max_size:
                self._start_thread()

    def _rejected(self) -> TaskRejectedError:
        Log.warning(f"Transfer queue full for {self._submit_timeout}s, rejecting task")
        return TaskRejectedError("Transfer queue is full, try again later")

    def _start_thread(self) -> None:
        """Start one worker. Caller holds the lock."""
        self._counter += 1
        thread = threading.Thread(
            target=self._work,
            name=f"{self._name_prefix}-{self._counter}",
            daemon=True,
        )
        self._threads.add(thread)
        thread.start()

    def _work(self) -> None:
        current = threading.current_thread()
        try:
            while True:
                try:
                    task = self._queue.get(timeout=self._keep_alive)
                except queue.Empty:
                    if self._retire_if_extra(current):
                        return
                    continue
                if task is None:
                    return
                task.run()
        finally:
            with self._lock:
                self._threads.discard(current)

    def _retire_if_extra(self, thread: threading.Thread) -> bool:
        with self._lock:
            if self._shutdown or len(self._threads) <= self._core_size:
                return False
            self._threads.discard(thread)
            return True
