"""Tiered, cached lookup engine.

resolve() escalates exact -> cluster -> model and stops at the first tier
that yields an acceptable hit. Every outcome, including "unresolved", is
cached by fingerprint. Concurrent callers for the same fingerprint share a
single in-flight search; unrelated fingerprints never wait on each other.
"""

import logging
import re
import threading
import time
from collections import Counter, OrderedDict
from concurrent.futures import Executor, Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, Optional

from annot_pipeline.config import database_path
from annot_pipeline.exceptions import LookupTimeout
from annot_pipeline.models import TIER_CLUSTER, TIER_EXACT, TIER_MODEL, TIER_UNRESOLVED, AnnotationResult, Hit
from annot_pipeline.services import BaseService
from annot_pipeline.services.cluster import ClusterSearch
from annot_pipeline.services.exact import ExactMatchIndex
from annot_pipeline.services.model import ModelSearch
from annot_pipeline.utils import PersistentResultStore

logger = logging.getLogger("annot_pipeline.lookup")


class ResultCache:
    """Write-once result cache keyed by fingerprint.

    Unbounded by default. With max_size the least recently used entry is
    evicted; with ttl (seconds) entries expire. Evicted keys may be written
    again later, live keys never are.
    """

    def __init__(self, max_size: int = 0, ttl: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, tuple[AnnotationResult, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def _expired(self, stamp: float) -> bool:
        return bool(self.ttl) and self._clock() - stamp > self.ttl

    def get(self, key: str) -> Optional[AnnotationResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            result, stamp = entry
            if self._expired(stamp):
                del self._entries[key]
                self.evictions += 1
                return None
            self._entries.move_to_end(key)
            return result

    def put(self, key: str, result: AnnotationResult) -> AnnotationResult:
        """Store *result* unless a live entry exists; return the entry that is cached."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._expired(entry[1]):
                return entry[0]
            self._entries[key] = (result, self._clock())
            self._entries.move_to_end(key)
            while self.max_size and len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
            return result

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class LookupStats:
    """Thread-safe counters for resolutions, cache traffic and service calls."""

    tiers: Counter = field(default_factory=Counter)
    service_calls: Counter = field(default_factory=Counter)
    timeouts: Counter = field(default_factory=Counter)
    cache_hits: int = 0
    persistent_hits: int = 0
    joined: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def count(self, name: str, key: Optional[str] = None):
        with self._lock:
            if key is None:
                setattr(self, name, getattr(self, name) + 1)
            else:
                getattr(self, name)[key] += 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "tiers": dict(self.tiers),
                "service_calls": dict(self.service_calls),
                "timeouts": dict(self.timeouts),
                "cache_hits": self.cache_hits,
                "persistent_hits": self.persistent_hits,
                "joined": self.joined,
            }


def natural_key(identifier: str) -> tuple:
    """Sort key comparing digit runs numerically: UPS9 < UPS10."""
    parts = re.split(r"(\d+)", identifier)
    return tuple(int(part) if i % 2 else part for i, part in enumerate(parts))


def _io_pool_size(config: dict) -> int:
    pipeline = config.get("pipeline", {})
    return int(pipeline.get("threads") or 1) * int(pipeline.get("io_multiplier", 4))


def select_cluster_hit(
    hits: list[Hit],
    min_identity: float = 90.0,
    min_query_coverage: float = 0.9,
    min_subject_coverage: float = 0.8,
) -> Optional[Hit]:
    """Best hit above the identity/coverage thresholds.

    Ties on bit-score go to the lowest cluster id, compared in natural order
    (UniRef90_9 before UniRef90_10), so results are reproducible.
    """
    passing = [
        h for h in hits
        if h.identity >= min_identity
        and h.query_coverage >= min_query_coverage
        and h.subject_coverage >= min_subject_coverage
    ]
    if not passing:
        return None
    return min(passing, key=lambda h: (-h.score, natural_key(h.source_id)))


def select_model_hit(hits: list[Hit], max_evalue: float = 1e-10, min_score: float = 0.0) -> Optional[Hit]:
    """Best-scoring model hit within the e-value and score cutoffs."""
    passing = [h for h in hits if h.evalue <= max_evalue and h.score >= min_score]
    if not passing:
        return None
    return min(passing, key=lambda h: (-h.score, h.evalue, natural_key(h.source_id)))


def _result_from_hit(fingerprint: str, tier: str, hit: Hit) -> AnnotationResult:
    return AnnotationResult(
        fingerprint=fingerprint,
        tier=tier,
        product=hit.product,
        gene=hit.gene,
        cross_refs=tuple(hit.cross_refs),
        source_id=hit.source_id,
        score=hit.score,
        identity=hit.identity,
        coverage=hit.query_coverage,
        evalue=hit.evalue,
    )


class LookupEngine:
    """Resolves fingerprints through the exact, cluster and model tiers."""

    def __init__(
        self,
        exact: Optional[BaseService] = None,
        cluster: Optional[BaseService] = None,
        model: Optional[BaseService] = None,
        cache: Optional[ResultCache] = None,
        thresholds: Optional[dict[str, dict]] = None,
        executor: Optional[Executor] = None,
        timeouts: Optional[dict[str, float]] = None,
        persistent: Optional[PersistentResultStore] = None,
    ):
        """
        Args:
            exact, cluster, model: Services for the three tiers; None skips a tier.
            cache: Result cache (a fresh unbounded one by default).
            thresholds: Per-tier threshold dicts, keyed "cluster" and "model".
            executor: Pool that runs tier 2/3 searches. Callers of resolve()
                must not be threads of this same pool, otherwise a saturated
                pool waits on itself.
            timeouts: Per-tier bounds in seconds, counted from when the search
                starts running on the executor (only with an executor).
            persistent: Optional cross-run store consulted after a cache miss.
        """
        self.services = {TIER_EXACT: exact, TIER_CLUSTER: cluster, TIER_MODEL: model}
        self.cache = cache if cache is not None else ResultCache()
        thresholds = thresholds or {}
        self.cluster_thresholds = {
            "min_identity": float(thresholds.get(TIER_CLUSTER, {}).get("min_identity", 90.0)),
            "min_query_coverage": float(thresholds.get(TIER_CLUSTER, {}).get("min_query_coverage", 0.9)),
            "min_subject_coverage": float(thresholds.get(TIER_CLUSTER, {}).get("min_subject_coverage", 0.8)),
        }
        self.model_thresholds = {
            "max_evalue": float(thresholds.get(TIER_MODEL, {}).get("max_evalue", 1e-10)),
            "min_score": float(thresholds.get(TIER_MODEL, {}).get("min_score", 0.0)),
        }
        self.executor = executor
        self.timeouts = {k: v for k, v in (timeouts or {}).items() if v}
        self.persistent = persistent
        self.stats = LookupStats()
        self._inflight: dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: dict,
        executor: Optional[Executor] = None,
        services: Optional[dict[str, Optional[BaseService]]] = None,
    ) -> "LookupEngine":
        """Build the engine from the configuration dictionary.

        Services are created from the database settings unless *services*
        (keyed by tier) is given.
        """
        lookup = config.get("lookup", {})
        exact_cfg = lookup.get("exact", {})
        cluster_cfg = lookup.get("cluster", {})
        model_cfg = lookup.get("model", {})

        exact = cluster = model = None
        if services is not None:
            exact = services.get(TIER_EXACT)
            cluster = services.get(TIER_CLUSTER)
            model = services.get(TIER_MODEL)
        elif config.get("database"):
            exact = ExactMatchIndex(
                database_path(config, exact_cfg.get("index", "exact_index.sqlite")),
                pool_size=int(lookup.get("pool_size") or _io_pool_size(config)),
                acquire_timeout=float(exact_cfg.get("timeout") or 30),
            )
            cluster = ClusterSearch(
                database_path(config, cluster_cfg.get("database", "cluster_reps.dmnd")),
                binary=cluster_cfg.get("binary", "diamond"),
                timeout=cluster_cfg.get("timeout"),
            )
            model = ModelSearch(
                database_path(config, model_cfg.get("database", "models.hmm")),
                binary=model_cfg.get("binary", "hmmscan"),
                timeout=model_cfg.get("timeout"),
                max_evalue=float(model_cfg.get("max_evalue", 1e-10)),
            )
        else:
            logger.warning("No reference database configured; all proteins will stay unresolved")

        cache_cfg = config.get("cache", {})
        persistent_cfg = cache_cfg.get("persistent", {})
        persistent = None
        if persistent_cfg.get("enabled"):
            persistent = PersistentResultStore(
                cache_dir=persistent_cfg["directory"],
                ttl_days=int(persistent_cfg.get("ttl_days", 30)),
            )

        return cls(
            exact=exact,
            cluster=cluster,
            model=model,
            cache=ResultCache(
                max_size=int(cache_cfg.get("max_size") or 0),
                ttl=float(cache_cfg.get("ttl_seconds") or 0),
            ),
            thresholds={TIER_CLUSTER: cluster_cfg, TIER_MODEL: model_cfg},
            executor=executor,
            timeouts={TIER_CLUSTER: cluster_cfg.get("timeout"), TIER_MODEL: model_cfg.get("timeout")},
            persistent=persistent,
        )

    def resolve(self, fingerprint: str, sequence: str) -> AnnotationResult:
        """Resolve one fingerprint, joining an in-flight search if there is one."""
        cached = self.cache.get(fingerprint)
        if cached is not None:
            self.stats.count("cache_hits")
            return cached

        with self._inflight_lock:
            # The owner publishes to the cache before leaving the registry,
            # so a second check here cannot miss a finished search.
            cached = self.cache.get(fingerprint)
            if cached is not None:
                self.stats.count("cache_hits")
                return cached
            future = self._inflight.get(fingerprint)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[fingerprint] = future

        if not owner:
            self.stats.count("joined")
            return future.result()

        try:
            result = self.cache.put(fingerprint, self._search(fingerprint, sequence))
            future.set_result(result)
            return result
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._inflight_lock:
                self._inflight.pop(fingerprint, None)

    def _search(self, fingerprint: str, sequence: str) -> AnnotationResult:
        if self.persistent is not None:
            stored = self.persistent.get(fingerprint)
            if stored is not None:
                self.stats.count("persistent_hits")
                return AnnotationResult.from_dict(stored)

        result = self._escalate(fingerprint, sequence)
        self.stats.count("tiers", result.tier)
        if self.persistent is not None:
            self.persistent.set(fingerprint, result.to_dict())
        return result

    def _escalate(self, fingerprint: str, sequence: str) -> AnnotationResult:
        hits = self._query(TIER_EXACT, fingerprint, sequence)
        if hits:
            return _result_from_hit(fingerprint, TIER_EXACT, hits[0])

        hit = select_cluster_hit(self._query(TIER_CLUSTER, fingerprint, sequence), **self.cluster_thresholds)
        if hit is not None:
            return _result_from_hit(fingerprint, TIER_CLUSTER, hit)

        hit = select_model_hit(self._query(TIER_MODEL, fingerprint, sequence), **self.model_thresholds)
        if hit is not None:
            return _result_from_hit(fingerprint, TIER_MODEL, hit)

        return AnnotationResult(fingerprint=fingerprint, tier=TIER_UNRESOLVED)

    def _query(self, tier: str, fingerprint: str, sequence: str) -> list[Hit]:
        """Call one tier's service; a timeout counts as no match."""
        service = self.services.get(tier)
        if service is None:
            return []
        self.stats.count("service_calls", tier)
        try:
            if self.executor is None or tier == TIER_EXACT:
                return service.query(fingerprint, sequence)
            return self._offload(tier, service, fingerprint, sequence)
        except LookupTimeout as e:
            self.stats.count("timeouts", tier)
            logger.warning(f"{e}; escalating ({fingerprint[:12]})")
            return []

    def _offload(self, tier: str, service: BaseService, fingerprint: str, sequence: str) -> list[Hit]:
        """Run a search on the executor, bounding it from when it starts running.

        Time spent queued behind other searches does not count against the
        tier timeout.
        """
        started = threading.Event()

        def run():
            started.set()
            return service.query(fingerprint, sequence)

        future = self.executor.submit(run)
        # also wakes the caller when the pool drops the search before it starts
        future.add_done_callback(lambda f: started.set())
        started.wait()

        timeout = self.timeouts.get(tier)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise LookupTimeout(tier, timeout) from None

    def is_available(self) -> dict[str, bool]:
        return {tier: service.is_available() for tier, service in self.services.items() if service is not None}

    def close(self):
        for service in self.services.values():
            if service is not None:
                service.close()
