"""Shared fixtures: synthetic card frames and fake collaborators.

Nothing here touches a camera, an OCR model or the network.
"""
from concurrent.futures import Executor, Future

import cv2
import numpy as np
import pytest

from scanner import CatalogEntry, Quadrilateral, ScannerConfig


def draw_card(corners, size=(640, 480), card_color=(235, 235, 235), background=(20, 20, 20)):
    """RGB frame with a filled convex polygon at ``corners`` (tl, tr, br, bl)."""
    width, height = size
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:] = background
    pts = np.array(corners, dtype=np.int32)
    cv2.fillConvexPoly(frame, pts, card_color)
    return frame


def rect_corners(x0, y0, x1, y1):
    return [(x0, y0), (x1, y0), (x1, y1), (x0, y1)]


class FakeRecognizer:
    """Answers by whitelist: the number band whitelist contains a slash."""

    def __init__(self, name_text="", number_text="", error=None):
        self.name_text = name_text
        self.number_text = number_text
        self.error = error
        self.calls = []

    def recognize(self, image, whitelist, single_line=True):
        self.calls.append((image, whitelist, single_line))
        if self.error is not None:
            raise self.error
        return self.number_text if '/' in whitelist else self.name_text


class FakeIdentifier:
    """Cloud identifier returning (or raising) scripted responses in order."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.lookups = []

    def _next(self):
        response = self.responses.pop(0) if self.responses else {"name": "DEEP_SCAN_REQUIRED"}
        if isinstance(response, Exception):
            raise response
        return response

    def identify(self, jpeg_bytes, retry=False):
        self.calls.append((jpeg_bytes, retry))
        return self._next()

    def lookup(self, query):
        self.lookups.append(query)
        return self._next()


class InlineExecutor(Executor):
    """Runs every job at submit time."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Holds jobs until ``run_pending`` is called.

    With ``started`` the futures are already running when handed out, so
    they can no longer be cancelled.
    """

    def __init__(self, started=False):
        self.started = started
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        if self.started:
            future.set_running_or_notify_cancel()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        jobs, self.pending = self.pending, []
        for future, fn, args, kwargs in jobs:
            if not self.started and not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


class ManualClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class ScriptedDetector:
    """Returns queued detections, then repeats ``default``."""

    def __init__(self, outputs=(), default=None):
        self.outputs = list(outputs)
        self.default = default
        self.frames = []

    def detect(self, frame):
        self.frames.append(frame)
        if self.outputs:
            return self.outputs.pop(0)
        return self.default


@pytest.fixture
def config():
    return ScannerConfig()


@pytest.fixture
def card_quad():
    return Quadrilateral(tl=(220.0, 100.0), tr=(420.0, 100.0), bl=(220.0, 380.0), br=(420.0, 380.0))


@pytest.fixture
def card_frame():
    return draw_card(rect_corners(220, 100, 420, 380))


@pytest.fixture
def small_catalog():
    return (
        CatalogEntry("Grubbin", "Surging Sparks", "017/191", "Common", "Grass", "70"),
        CatalogEntry("Vikavolt", "Surging Sparks", "019/191", "Rare", "Grass", "160"),
        CatalogEntry("Pikachu ex", "Surging Sparks", "036/191", "Double Rare", "Lightning", "200"),
        CatalogEntry("Squirtle", "Surging Sparks", "055/191", "Common", "Water", "70"),
    )


@pytest.fixture
def clock():
    return ManualClock()
