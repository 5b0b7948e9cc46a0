import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from upload_errors import (
    AuthError,
    EmptySourceError,
    TransferCancelled,
    UploadError,
)

log = logging.getLogger(__name__)


class RunStatistics:
    """Outcome counters shared by every worker of one run."""

    def __init__(self):
        self.success = 0
        self.failed = 0
        self.exists = 0
        self.failed_list = []
        self.failures = []
        self._lock = threading.Lock()

    def record_success(self):
        with self._lock:
            self.success += 1

    def record_conflict(self):
        with self._lock:
            self.exists += 1

    def record_failure(self, target, error=None):
        with self._lock:
            self.failed += 1
            self.failed_list.append(target.local_path)
            self.failures.append((target.local_path, error))

    @property
    def total(self) -> int:
        with self._lock:
            return self.success + self.failed + self.exists

    def write_failed(self, path):
        """Write the failed local paths, one per line; nothing is written when all succeeded."""
        with self._lock:
            failed = list(self.failed_list)
        if not failed:
            return False
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(failed))
        return True


def is_retryable(error) -> bool:
    """Whether a whole-file retry could plausibly succeed."""
    if isinstance(error, (AuthError, EmptySourceError, TransferCancelled)):
        return False
    return not error.permanent


class UploadPool:
    """
    Runs uploads for a stream of targets with at most ``workers`` in flight.

    Every target handed to run() ends up in exactly one RunStatistics
    bucket: success, exists (409 conflict) or failed. After
    request_stop() no new target is started and running transfers stop
    at their next chunk boundary; whatever did not finish is counted as
    failed so it lands in the failed list for a later run.
    """

    def __init__(self, uploader, workers=5, file_retries=3, retry_wait=2.0,
                 sleep=None, on_result=None, log_fn=None, stop_event=None):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.uploader = uploader
        self.workers = workers
        self.file_retries = max(1, file_retries)
        self.retry_wait = retry_wait
        self.on_result = on_result
        self.log_fn = log_fn
        self._stop = stop_event or threading.Event()
        # returns early once a stop is requested
        self.sleep = sleep or self._stop.wait

    def request_stop(self):
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _log(self, message, level=logging.INFO):
        log.log(level, message)
        if self.log_fn:
            self.log_fn(message)

    def run(self, targets) -> RunStatistics:
        stats = RunStatistics()
        slots = threading.BoundedSemaphore(self.workers)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="upload") as pool:
            for target in targets:
                if self.stopping:
                    self._finish(target, stats, TransferCancelled("Run stopped before upload started"))
                    continue
                # back-pressure for streamed input: never queue more than we can run
                slots.acquire()
                pool.submit(self._worker, target, stats, slots)
        return stats

    def _worker(self, target, stats, slots):
        outcome = None
        try:
            if self.stopping:
                outcome = TransferCancelled("Run stopped before upload started")
            else:
                outcome = self._upload_with_retry(target)
        except AuthError as ex:
            self._log(f"Authentication failed, stopping run: {ex}", logging.ERROR)
            self.request_stop()
            outcome = ex
        except UploadError as ex:
            outcome = ex
        except Exception as ex:
            log.exception("Unexpected error uploading %s", target.local_path)
            outcome = ex
        finally:
            try:
                self._finish(target, stats, outcome)
            finally:
                slots.release()

    def _finish(self, target, stats, outcome):
        if isinstance(outcome, str):
            stats.record_success()
        elif isinstance(outcome, UploadError) and outcome.is_conflict:
            stats.record_conflict()
            self._log(f"Already exists: {target.remote_path}")
        else:
            stats.record_failure(target, outcome)
            self._log(f"Failed {target.local_path}: {outcome}", logging.ERROR)
        if self.on_result:
            self.on_result(target, outcome)

    def _upload_with_retry(self, target) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.uploader.upload(target, should_stop=lambda: self.stopping)
            except UploadError as ex:
                if not is_retryable(ex) or attempt >= self.file_retries or self.stopping:
                    raise
                wait = self.retry_wait * attempt
                self._log(f"Retry {attempt}: {target.local_path} ({ex})", logging.WARNING)
                self.sleep(wait)
                if self.stopping:
                    raise TransferCancelled(f"Run stopped while waiting to retry {target.local_path}") from ex
