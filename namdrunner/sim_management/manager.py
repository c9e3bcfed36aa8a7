import logging
from threading import Event, Lock, Thread
from typing import Any, Callable, Optional

from namdrunner.sim_management.cancellation import CancellationToken
from namdrunner.sim_management.chains import (
    AutomationChain,
    ChainContext,
    SyncChain,
    SyncReport,
    reconcile,
)
from namdrunner.sim_management.types import ProgressCallback

logger = logging.getLogger(__name__)


class ChainHandle:
    """A chain running on a background thread.

    Parameters
    ----------
    name : str
        A name for the work being done, used for the thread name and logging.
    target : Callable[..., Any]
        The work to do. It is called with the positional and keyword arguments given,
        plus a keyword argument ``cancel`` holding the handle's `CancellationToken`.
    """

    def __init__(self, name: str, target: Callable[..., Any], *args, **kwargs):
        self._name = name
        self._token = CancellationToken()
        self._done = Event()
        self._result = None
        self._error = None
        self._thread = Thread(
            target=self._run, args=(target, args, kwargs), name=name, daemon=True
        )

    def _start(self) -> "ChainHandle":
        self._thread.start()
        return self

    def _run(self, target, args, kwargs) -> None:
        try:
            self._result = target(*args, cancel=self._token, **kwargs)
        except Exception as e:
            logger.debug("%s finished with error: %s", self._name, e)
            self._error = e
        finally:
            self._done.set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def done(self) -> bool:
        """(Read-only) Whether the chain has finished, successfully or not."""
        return self._done.is_set()

    @property
    def cancellation_token(self) -> CancellationToken:
        return self._token

    def cancel(self) -> None:
        """Ask the chain to stop at its next suspension point."""

        logger.info("Cancellation requested for %s", self._name)
        self._token.cancel()

    def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the chain to finish and return its result.

        Raises
        ------
        TimeoutError
            If the chain does not finish within `timeout` seconds.
        Exception
            Any error raised by the chain.
        """

        if not self._done.wait(timeout=timeout):
            raise TimeoutError(f"{self._name} did not finish within {timeout} seconds.")

        if self._error is not None:
            raise self._error

        return self._result

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout=timeout)


class JobManager:
    """
    Runs automation chains in the background and keeps job statuses up to date.

    Chains are started with `start` (for any callable) or `run_chain` (for a chain
    class), each returning a `ChainHandle` through which the chain can be cancelled and
    its result collected. A monitor thread, started with `start_monitor`, periodically
    syncs all active jobs with the scheduler until `shutdown` is called.

    Parameters
    ----------
    context : ChainContext
        The session, cache and remote layout chains work with.
    polling_interval : float, optional
        (Default: 60) Time interval, in seconds, between syncs made by the monitor.
    progress : ProgressCallback, optional
        (Default: None) Receives progress events from syncs made by the monitor.

    Examples
    --------
    >>> manager = JobManager(context)
    >>> handle = manager.run_chain(SubmissionChain, job_id)
    >>> record = handle.result()
    >>> manager.shutdown()
    """

    def __init__(
        self,
        context: ChainContext,
        polling_interval: float = 60,
        progress: Optional[ProgressCallback] = None,
    ):
        self._context = context
        self._polling_interval = polling_interval
        self._progress = progress
        self._handles: list[ChainHandle] = []
        self._lock = Lock()
        self._thread = None
        self._monitor_token = None
        self._shutdown_event = Event()

    @property
    def context(self) -> ChainContext:
        """(Read-only) The context chains are run with."""
        return self._context

    @property
    def polling_interval(self) -> float:
        return self._polling_interval

    def start(self, chain_callable: Callable[..., Any], *args, **kwargs) -> ChainHandle:
        """
        Run a callable on a background thread.

        Parameters
        ----------
        chain_callable : Callable[..., Any]
            The work to run. It must accept a keyword argument ``cancel``, which will be
            passed the `CancellationToken` of the returned handle.
        *args, **kwargs
            Further arguments to pass to `chain_callable`.

        Returns
        -------
        ChainHandle
            A handle on the running work.
        """

        name = getattr(chain_callable, "__name__", type(chain_callable).__name__)
        handle = ChainHandle(name, chain_callable, *args, **kwargs)
        with self._lock:
            self._handles = [h for h in self._handles if not h.done]
            self._handles.append(handle)

        return handle._start()

    def run_chain(
        self,
        chain_cls: type[AutomationChain],
        *args,
        progress: Optional[ProgressCallback] = None,
    ) -> ChainHandle:
        """
        Run an automation chain on a background thread.

        Parameters
        ----------
        chain_cls : type[AutomationChain]
            The class of chain to run, e.g. ``SubmissionChain``.
        *args
            Arguments for the chain's ``run`` method.
        progress : ProgressCallback, optional
            (Default: None) Receives the chain's progress events.
        """

        def run(*run_args, cancel: CancellationToken):
            return chain_cls(self._context, progress=progress, cancel=cancel).run(*run_args)

        run.__name__ = f"{chain_cls.name} chain"
        return self.start(run, *args)

    def reconcile(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> SyncReport:
        """Bring the local cache up to date with the remote host (see
        ``namdrunner.sim_management.chains.reconcile``)."""

        return reconcile(self._context, progress=progress, cancel=cancel)

    def start_monitor(self, polling_interval: Optional[float] = None) -> None:
        """
        Start syncing active jobs periodically on a background thread.

        Has no effect if the monitor is already running.

        Parameters
        ----------
        polling_interval : float, optional
            (Default: None) Time interval, in seconds, between syncs. If ``None`` then the
            manager's polling interval is used.
        """

        if polling_interval is not None:
            self._polling_interval = polling_interval

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return None

            self._shutdown_event.clear()
            self._monitor_token = CancellationToken()
            self._thread = Thread(
                target=self._monitor_jobs, name="job monitor", daemon=True
            )
            self._thread.start()

        logger.info("Job monitor started (every %s seconds)", self._polling_interval)
        return None

    def _monitor_jobs(self) -> None:
        """Sync active jobs until shutdown is requested."""

        while not self._shutdown_event.is_set():
            if self._shutdown_event.wait(timeout=self._polling_interval):
                return None

            try:
                report = SyncChain(
                    self._context, progress=self._progress, cancel=self._monitor_token
                ).run()
            except Exception as e:
                if self._shutdown_event.is_set():
                    return None

                logger.warning("Background sync failed: %s", e)
                continue

            if report.error is not None:
                logger.warning("Background sync could not reach the scheduler")

    @property
    def monitoring(self) -> bool:
        """(Read-only) Whether the monitor thread is running."""

        return self._thread is not None and self._thread.is_alive()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the monitor and cancel chains still running, waiting for them to finish.

        Chains stop at their next suspension point; work already done is not undone.
        """

        with self._lock:
            self._shutdown_event.set()
            if self._monitor_token is not None:
                self._monitor_token.cancel()
            handles = [h for h in self._handles if not h.done]
            self._handles = []

        for handle in handles:
            handle.cancel()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        for handle in handles:
            handle.join(timeout=timeout)
