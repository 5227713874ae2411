"""Boundary detection on synthetic frames."""
import numpy as np
import pytest

from scanner import BoundaryDetector, ScannerConfig, order_corners

from conftest import draw_card, rect_corners

# Detected corners sit on the outside of the edge band, a few pixels off.
CORNER_TOLERANCE = 20


def assert_near(point, expected, tol=CORNER_TOLERANCE):
    assert abs(point[0] - expected[0]) <= tol and abs(point[1] - expected[1]) <= tol, (point, expected)


class TestOrderCorners:

    def test_axis_aligned(self):
        quad = order_corners([(10, 100), (10, 10), (80, 100), (80, 10)])
        assert quad.tl == (10.0, 10.0)
        assert quad.tr == (80.0, 10.0)
        assert quad.bl == (10.0, 100.0)
        assert quad.br == (80.0, 100.0)

    def test_tilted(self):
        quad = order_corners([(60, 5), (105, 70), (45, 110), (0, 45)])
        assert quad.tl == (0.0, 45.0)
        assert quad.tr == (60.0, 5.0)
        assert quad.br == (105.0, 70.0)
        assert quad.bl == (45.0, 110.0)

    def test_diamond_is_ambiguous(self):
        assert order_corners([(50, 0), (100, 50), (50, 100), (0, 50)]) is None


class TestQuadrilateral:

    def test_area_and_aspect(self, card_quad):
        assert card_quad.area == pytest.approx(200 * 280)
        assert card_quad.aspect_ratio == pytest.approx(200 / 280)

    def test_scaled(self, card_quad):
        half = card_quad.scaled(0.5)
        assert half.tl == (110.0, 50.0)
        assert half.br == (210.0, 190.0)


class TestBoundaryDetector:

    def test_finds_upright_card(self, card_frame):
        quad = BoundaryDetector().detect(card_frame)

        assert quad is not None
        assert_near(quad.tl, (220, 100))
        assert_near(quad.tr, (420, 100))
        assert_near(quad.bl, (220, 380))
        assert_near(quad.br, (420, 380))
        assert 0.55 <= quad.aspect_ratio <= 0.90

    def test_finds_skewed_card(self):
        corners = [(230, 90), (410, 110), (430, 380), (210, 370)]
        frame = draw_card(corners)

        quad = BoundaryDetector().detect(frame)

        assert quad is not None
        assert_near(quad.tl, corners[0])
        assert_near(quad.tr, corners[1])
        assert_near(quad.br, corners[2])
        assert_near(quad.bl, corners[3])

    def test_idempotent_on_static_frame(self, card_frame):
        detector = BoundaryDetector()
        first = detector.detect(card_frame)
        second = detector.detect(card_frame)
        assert first == second

    def test_idempotent_none(self):
        blank = np.full((480, 640, 3), 30, dtype=np.uint8)
        detector = BoundaryDetector()
        assert detector.detect(blank) is None
        assert detector.detect(blank) is None

    def test_rejects_narrow_quad(self):
        # 160x400 strip, aspect ~0.40: a valid 4-point polygon but not a card.
        frame = draw_card([(240, 40), (400, 50), (400, 440), (240, 430)])
        assert BoundaryDetector().detect(frame) is None

    def test_rejects_small_card(self):
        # ~5% of the frame, under the 12% area floor.
        frame = draw_card(rect_corners(300, 200, 360, 284))
        assert BoundaryDetector().detect(frame) is None

    def test_largest_card_wins(self):
        frame = draw_card(rect_corners(40, 60, 240, 340))
        frame[150:234, 400:460] = 235  # small card-shaped patch
        quad = BoundaryDetector().detect(frame)
        assert quad is not None
        assert_near(quad.tl, (40, 60))
        assert_near(quad.br, (240, 340))

    def test_rgba_frame(self, card_frame):
        alpha = np.full(card_frame.shape[:2] + (1,), 255, dtype=np.uint8)
        rgba = np.concatenate([card_frame, alpha], axis=2)
        assert BoundaryDetector().detect(rgba) == BoundaryDetector().detect(card_frame)

    def test_coordinates_are_full_resolution(self):
        frame = draw_card(rect_corners(440, 200, 840, 760), size=(1280, 960))
        quad = BoundaryDetector(ScannerConfig(detect_width=320)).detect(frame)
        assert quad is not None
        assert_near(quad.tl, (440, 200), tol=30)
        assert_near(quad.br, (840, 760), tol=30)

    def test_custom_aspect_band(self):
        frame = draw_card([(240, 40), (400, 50), (400, 440), (240, 430)])
        detector = BoundaryDetector(ScannerConfig(aspect_band=(0.30, 0.90)))
        assert detector.detect(frame) is not None
