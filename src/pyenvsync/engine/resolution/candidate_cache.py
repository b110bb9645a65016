from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TypeVar

from cachetools import LRUCache

from pyenvsync.errors import TransientFetchError
from pyenvsync.engine.resolution.providers import PackageMetadataProvider
from pyenvsync.model.requirement.candidate_model import PackageCandidate
from pyenvsync.model.requirement.requirement_model import Requirement

T = TypeVar("T")

_CACHE_MAX_SIZE: int = 100_000


class CandidateCache:
    """
    Per-run cache of candidate lists, filled concurrently.

    `prefetch` submits fetches for many packages to a thread pool; `get`
    blocks only on the package asked for. Each entry is an immutable tuple,
    so worker threads never share mutable state with the solver. The cache
    belongs to one resolution run and is discarded with it.

    Declared requirements are cached per candidate as well. Transient fetch
    errors from either call are retried with exponential backoff up to
    `retries` times before they escalate. Other errors, including
    `PackageNotFoundError`, are raised from `get` unchanged.
    """

    def __init__(
            self,
            provider: PackageMetadataProvider,
            *,
            workers: int = 8,
            retries: int = 3,
            backoff: float = 0.2,
            sleep: Callable[[float], None] = time.sleep):
        self._provider = provider
        self._retries = max(0, retries)
        self._backoff = backoff
        self._sleep = sleep
        self._lock = threading.Lock()
        self._cache: LRUCache[str, Future[tuple[PackageCandidate, ...]]] = LRUCache(maxsize=_CACHE_MAX_SIZE)
        self._requirements: LRUCache[tuple[str, str, str], frozenset[Requirement]] = LRUCache(maxsize=_CACHE_MAX_SIZE)
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="pyenvsync-fetch")

    def __enter__(self) -> CandidateCache:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def _retrying(self, fetch: Callable[..., T], *args) -> T:
        attempt = 0
        while True:
            try:
                return fetch(*args)
            except TransientFetchError:
                if attempt >= self._retries:
                    raise
                self._sleep(self._backoff * (2 ** attempt))
                attempt += 1

    def _fetch(self, name: str) -> tuple[PackageCandidate, ...]:
        return tuple(self._retrying(self._provider.candidates_for, name))

    def _future(self, name: str) -> Future[tuple[PackageCandidate, ...]]:
        with self._lock:
            future = self._cache.get(name)
            if future is None:
                future = self._executor.submit(self._fetch, name)
                self._cache[name] = future
            return future

    def prefetch(self, names: Iterable[str]) -> None:
        for name in names:
            self._future(name)

    def get(self, name: str) -> tuple[PackageCandidate, ...]:
        return self._future(name).result()

    def declared_requirements(self, candidate: PackageCandidate) -> frozenset[Requirement]:
        key = (candidate.name, str(candidate.version), str(candidate.source))
        with self._lock:
            cached = self._requirements.get(key)
        if cached is None:
            cached = frozenset(self._retrying(self._provider.declared_requirements, candidate))
            with self._lock:
                self._requirements[key] = cached
        return cached
