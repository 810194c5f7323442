import datetime
import threading
import time
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from imgoptim.errors import StoreUnavailable
from imgoptim.logs import ContextLogger
from imgoptim.normalizer.index import NormalizedRequest
from imgoptim.store.index import CacheEntry, CacheStore, Resolved
from imgoptim.transform.index import TransformClient


def elapsed_ms(start_ns: int) -> float:
  return (time.perf_counter_ns() - start_ns) / 1_000_000


class OriginResolver:
  """Serves image variants from the cache store, filling misses from the Transform Service.

  Concurrent misses on one key each call the Transform Service; there is no
  request coalescing. Write-backs run on ``executor`` so building the response
  never waits for them; the handler calls ``drain`` before it returns, since
  Lambda freezes the environment afterwards. A failed write-back is logged
  and dropped.
  """

  def __init__(
      self,
      store: Optional[CacheStore],
      transform: TransformClient,
      executor: ThreadPoolExecutor,
      cache_control: str,
      store_ttl: int,
  ):
    self.store = store
    self.transform = transform
    self.executor = executor
    self.cache_control = cache_control
    self.store_ttl = datetime.timedelta(seconds=store_ttl)
    self.pending: set[Future[None]] = set()
    self.pending_lock = threading.Lock()

  def write_back(self, log: ContextLogger, entry: CacheEntry) -> Future[None]:
    assert self.store is not None
    store = self.store

    def run() -> None:
      try:
        store.put(entry)
      except StoreUnavailable as e:
        log.log_warning('write-back failed', {'reason': str(e), 'key': entry.key})
        return
      log.log_debug('written back', {'key': entry.key, 'size': len(entry.payload)})

    def done(future: Future[None]) -> None:
      with self.pending_lock:
        self.pending.discard(future)
      e = future.exception()
      if e is not None:
        log.log_error('write-back crashed', {'reason': repr(e), 'key': entry.key})

    future = self.executor.submit(run)
    with self.pending_lock:
      self.pending.add(future)
    future.add_done_callback(done)
    return future

  def drain(self, log: ContextLogger, timeout: float) -> int:
    """Waits up to ``timeout`` seconds for pending write-backs; returns how many are still running."""
    with self.pending_lock:
      pending = set(self.pending)
    if len(pending) == 0:
      return 0

    _, not_done = futures.wait(pending, timeout=timeout)
    if len(not_done) != 0:
      log.log_warning('write-back still running', {'count': len(not_done), 'timeout': timeout})
    return len(not_done)

  def resolve(
      self,
      log: ContextLogger,
      normalized: NormalizedRequest,
      now: datetime.datetime,
  ) -> Resolved:
    key = normalized.cache_key
    timings = []

    if self.store is not None:
      start_ns = time.perf_counter_ns()
      entry = self.store.get(log, key, now)
      timings.append(('store', elapsed_ms(start_ns)))

      if entry is not None:
        log.log_debug('cache hit', {'key': key})
        return Resolved(
            payload=entry.payload,
            content_type=entry.content_type,
            cache_control=self.cache_control,
            source='cache',
            timings=tuple(timings))

    log.log_debug('cache miss', {'key': key})

    start_ns = time.perf_counter_ns()
    result = self.transform.fetch(log, key)
    timings.append(('transform', elapsed_ms(start_ns)))

    if self.store is not None:
      self.write_back(
          log,
          CacheEntry(
              key=key,
              payload=result.payload,
              content_type=result.content_type,
              stored_at=now,
              ttl=self.store_ttl))

    return Resolved(
        payload=result.payload,
        content_type=result.content_type,
        cache_control=self.cache_control,
        source='transform',
        timings=tuple(timings))
