"""Lock state machine: turns per-frame detections into at most one
identification per card presented to the camera."""

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from scanner import (
    ExtractedText,
    IdentificationResult,
    Quadrilateral,
    QuotaExceededError,
    ScannerConfig,
    CloudServiceError,
    SPECIES_NAMES,
    UNKNOWN_NUMBER,
    clean_alpha,
    match_catalog,
    match_species,
    parse_card_number,
)
from cloud import parse_identification

logger = logging.getLogger(__name__)


class PipelineWarning(enum.Enum):
    EXTRACTION_FAILED = 'extraction_failed'
    CLOUD_FAILED = 'cloud_failed'
    CLOUD_QUOTA = 'cloud_quota'
    LOCK_TIMEOUT = 'lock_timeout'


# ============================================================
# LOCK STATES
# ============================================================

@dataclass(frozen=True)
class Searching:
    pass


@dataclass(frozen=True)
class Locked:
    quad: Quadrilateral
    locked_at: float


@dataclass(frozen=True)
class Resolving:
    quad: Quadrilateral
    locked_at: float
    attempts: int = 0


SEARCHING = Searching()


class _LockCycle:
    """Everything owned by one lock; dropped as a whole when the lock ends."""

    def __init__(self, lock_id, canonical, source=None):
        self.lock_id = lock_id
        self.canonical = canonical
        self.source = source
        self.extraction = None
        self.extraction_started = False
        self.cloud = None

    def cancel(self):
        for future in (self.extraction, self.cloud):
            if future is not None:
                future.cancel()
        self.extraction = None
        self.cloud = None


# ============================================================
# STATE MACHINE
# ============================================================

class LockStateMachine:
    """Searching -> Locked -> Resolving -> Searching, one tick at a time.

    Extraction and cloud calls run on ``executor`` and are picked up by
    later ticks. At most one extraction runs at a time across locks: a new
    lock waits in Locked until the previous one has finished. Only a result
    or the lock timeout ends a lock.
    """

    def __init__(self, detector, rectifier, extractor, catalog, dispatcher=None,
                 config=None, sink=None, on_warning=None, executor=None,
                 clock=time.monotonic):
        self.detector = detector
        self.rectifier = rectifier
        self.extractor = extractor
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.config = config or ScannerConfig()
        self.sink = sink
        self.on_warning = on_warning
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="card-lock")
        self.state = SEARCHING
        self._cycle: Optional[_LockCycle] = None
        self._extraction = None
        self._lock_count = 0
        self.results_emitted = 0
        self.misses = 0

    @property
    def canonical(self):
        """Canonical card of the current lock, if any."""
        return self._cycle.canonical if self._cycle is not None else None

    @property
    def lock_id(self):
        return self._cycle.lock_id if self._cycle is not None else None

    def tick(self, frame, now=None) -> Optional[IdentificationResult]:
        now = self._clock() if now is None else now
        if isinstance(self.state, Searching):
            return self._search(frame, now)
        return self._track(frame, now)

    # -- Searching -------------------------------------------------------

    def _search(self, frame, now):
        quad = self.detector.detect(frame)
        if quad is None:
            return None
        self._begin_lock(frame, quad, now)
        return self._poll(now)

    def _begin_lock(self, frame, quad, now):
        self._lock_count += 1
        canonical = self.rectifier.rectify(frame, quad)
        source = np.array(frame, copy=True) if self.config.freeze_source else None
        self._cycle = _LockCycle(self._lock_count, canonical, source)
        self.state = Locked(quad, now)
        logger.info("Lock #%d: card at aspect %.3f", self._lock_count, quad.aspect_ratio)

        self._start_extraction(self._cycle)
        if not self.config.local_first:
            self.state = Resolving(quad, now, 0)
            self._dispatch(now)

    def _start_extraction(self, cycle):
        if cycle.extraction_started:
            return
        if self._extraction is not None and not self._extraction.done():
            logger.debug("Lock #%d: previous extraction still running, waiting", cycle.lock_id)
            return
        cycle.extraction = self._executor.submit(self._identify_locally, cycle.canonical)
        cycle.extraction_started = True
        self._extraction = cycle.extraction

    def _identify_locally(self, canonical):
        extracted = self.extractor.extract(canonical)
        entry = match_catalog(extracted, self.catalog, self.config.match_threshold)
        return extracted, entry

    # -- Locked / Resolving ----------------------------------------------

    def _track(self, frame, now):
        state = self.state
        if now - state.locked_at >= self.config.lock_timeout:
            self._abandon(now)
            return None

        source = self._cycle.source if self._cycle.source is not None else frame
        quad = self.detector.detect(source)
        if quad is not None:
            self.state = replace(state, quad=quad)
        return self._poll(now)

    def _poll(self, now):
        cycle = self._cycle
        self._start_extraction(cycle)
        if cycle.extraction is not None and cycle.extraction.done():
            future, cycle.extraction = cycle.extraction, None
            entry = None
            try:
                extracted, entry = future.result()
            except Exception as e:
                self._warn(PipelineWarning.EXTRACTION_FAILED,
                           f"Lock #{cycle.lock_id}: text extraction failed: {e}")
            else:
                logger.info("Lock #%d: OCR name=%r number=%r", cycle.lock_id,
                            extracted.name, extracted.number)
            if entry is not None:
                return self._emit(IdentificationResult.from_entry(entry))
            if isinstance(self.state, Locked):
                logger.info("Lock #%d: local match inconclusive, falling back to cloud", cycle.lock_id)
                self.state = Resolving(self.state.quad, self.state.locked_at, 0)

        if isinstance(self.state, Resolving):
            result = self._collect_cloud()
            if result is None and self._cycle is not None and self._cycle.cloud is None:
                self._dispatch(now)
                result = self._collect_cloud()
            if result is not None:
                return self._emit(result)
        return None

    def _dispatch(self, now):
        if self.dispatcher is None:
            return
        state = self.state
        future = self.dispatcher.submit(self._cycle.canonical, retry=state.attempts > 0, now=now)
        if future is None:
            logger.debug("Lock #%d: cloud call not admitted yet", self._cycle.lock_id)
            return
        self._cycle.cloud = future
        self.state = replace(state, attempts=state.attempts + 1)
        logger.info("Lock #%d: cloud attempt %d", self._cycle.lock_id, state.attempts + 1)

    def _collect_cloud(self):
        cycle = self._cycle
        if cycle is None or cycle.cloud is None or not cycle.cloud.done():
            return None
        future, cycle.cloud = cycle.cloud, None
        try:
            result = future.result()
        except QuotaExceededError as e:
            self._warn(PipelineWarning.CLOUD_QUOTA,
                       f"Lock #{cycle.lock_id}: cloud quota exhausted, retrying: {e}")
            return None
        except Exception as e:
            self._warn(PipelineWarning.CLOUD_FAILED,
                       f"Lock #{cycle.lock_id}: cloud identification failed: {e}")
            return None
        if result is None:
            logger.info("Lock #%d: cloud answer inconclusive, will retry", cycle.lock_id)
        return result

    # -- Leaving a lock ----------------------------------------------------

    def _emit(self, result):
        lock_id = self._cycle.lock_id
        self._reset()
        self.results_emitted += 1
        logger.info("Lock #%d: identified %s %s (%s)", lock_id, result.name,
                    result.number, result.source.value)
        if self.sink is not None:
            self.sink(result)
        return result

    def _abandon(self, now):
        lock_id = self._cycle.lock_id
        elapsed = now - self.state.locked_at
        self._reset()
        self.misses += 1
        self._warn(PipelineWarning.LOCK_TIMEOUT,
                   f"Lock #{lock_id}: no identification after {elapsed:.2f}s, searching again")

    def _reset(self):
        if self._cycle is not None:
            self._cycle.cancel()
        self._cycle = None
        self.state = SEARCHING

    def _warn(self, kind, message):
        logger.warning(message)
        if self.on_warning is not None:
            self.on_warning(kind, message)

    # -- Loop ----------------------------------------------------------------

    def run(self, next_frame, interval=None, max_ticks=None, stop=None):
        """Cooperative tick loop at a fixed cadence.

        ``next_frame`` returning None skips that tick. Stops after
        ``max_ticks`` ticks or when the ``stop`` event is set.
        """
        interval = self.config.tick_interval if interval is None else interval
        stop = stop or threading.Event()
        ticks = 0
        while not stop.is_set():
            if max_ticks is not None and ticks >= max_ticks:
                break
            started = time.monotonic()
            frame = next_frame()
            if frame is not None:
                self.tick(frame)
            ticks += 1
            remaining = interval - (time.monotonic() - started)
            if remaining > 0:
                stop.wait(remaining)
        return ticks

    def close(self):
        self._reset()
        if self._owns_executor:
            self._executor.shutdown(wait=False)


# ============================================================
# ONE-SHOT HELPERS
# ============================================================

@dataclass(frozen=True)
class StillScan:
    quad: Optional[Quadrilateral] = None
    extracted: Optional[ExtractedText] = None
    result: Optional[IdentificationResult] = None


def identify_still(frame, detector, rectifier, extractor, catalog, dispatcher=None,
                   config=None):
    """Detect -> rectify -> extract -> match -> cloud, once, on a still image."""
    config = config or ScannerConfig()
    quad = detector.detect(frame)
    if quad is None:
        return StillScan()

    canonical = rectifier.rectify(frame, quad)
    extracted = None
    try:
        extracted = extractor.extract(canonical)
    except Exception as e:
        logger.warning("Text extraction failed: %s", e)
    else:
        entry = match_catalog(extracted, catalog, config.match_threshold)
        if entry is not None:
            return StillScan(quad, extracted, IdentificationResult.from_entry(entry))

    result = None
    if dispatcher is not None:
        try:
            result = dispatcher.request_identification(canonical)
        except CloudServiceError as e:
            logger.warning("Cloud identification failed: %s", e)
    return StillScan(quad, extracted, result)


def lookup_text(query, catalog, identifier=None, species=SPECIES_NAMES, min_score=4):
    """Manual search: local catalog first, then the cloud text lookup.

    Cloud errors propagate to the caller.
    """
    number = parse_card_number(query) or UNKNOWN_NUMBER
    entry = match_catalog(ExtractedText(query, query, clean_alpha(query), number),
                          catalog, min_score)
    if entry is None:
        corrected = match_species(query, species)
        if corrected:
            entry = match_catalog(ExtractedText(query, query, corrected, number),
                                  catalog, min_score)
    if entry is not None:
        return IdentificationResult.from_entry(entry)
    if identifier is None:
        return None
    return parse_identification(identifier.lookup(query))
