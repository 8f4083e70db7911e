from collections import OrderedDict
from threading import Lock


class QueueCache:
    """Bounded, thread-safe LRU map of job ID -> queue name.

    Best effort only: a miss means the caller looks the queue up in the store.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")

        self.maxsize = maxsize
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._lock = Lock()

    def get(self, job_id: str) -> str | None:
        with self._lock:
            queue = self._entries.get(job_id)
            if queue is not None:
                self._entries.move_to_end(job_id)
            return queue

    def set(self, job_id: str, queue: str) -> None:
        with self._lock:
            self._entries[job_id] = queue
            self._entries.move_to_end(job_id)
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries
