"""
Tests for mask reconstruction, filtering and outline shaping.
"""

import numpy as np
import pytest

from holdseg.config import MaskConfig, ModelConfig
from holdseg.detection import Detection
from holdseg.errors import ModelError
from holdseg.geometry import Letterbox, polygon_area
from holdseg.masks import (
    MaskStats,
    crop_mask,
    expand_ring,
    extract_contour,
    gaussian_weights,
    mask_to_polygon,
    passes_filters,
    reconstruct_mask,
    reshape_prototypes,
    smooth_ring,
)


def circle(n=64, radius=50.0, center=(100.0, 100.0)):
    angles = np.linspace(0, 2 * np.pi, n, endpoint=False)
    return np.stack([center[0] + radius * np.cos(angles), center[1] + radius * np.sin(angles)], axis=1)


def stats(mask_area, rect_w, rect_h):
    return MaskStats(
        contour=np.zeros((4, 2), dtype=np.int32),
        contour_area=float(mask_area),
        mask_area=mask_area,
        rect_width=rect_w,
        rect_height=rect_h,
    )


def test_reshape_accepts_batched_and_plain():
    config = ModelConfig(num_mask_coeffs=2, mask_size=8)
    batched = np.zeros((1, 2, 8, 8))
    protos = reshape_prototypes(batched, config)
    assert protos.shape == (2, 8, 8)
    assert protos.dtype == np.float32
    assert not protos.flags.writeable
    assert reshape_prototypes(batched[0], config).shape == (2, 8, 8)


def test_reshape_rejects_wrong_shape():
    config = ModelConfig(num_mask_coeffs=2, mask_size=8)
    with pytest.raises(ModelError):
        reshape_prototypes(np.zeros((1, 3, 8, 8)), config)


def test_reconstruct_is_linear_combination():
    protos = np.stack([np.full((4, 4), 1.0), np.arange(16, dtype=np.float32).reshape(4, 4)])
    mask = reconstruct_mask(np.array([2.0, 0.5]), protos)
    np.testing.assert_allclose(mask, 2.0 + 0.5 * np.arange(16).reshape(4, 4))


def test_reconstruct_is_deterministic():
    rng = np.random.default_rng(0)
    protos = rng.normal(size=(32, 64, 64)).astype(np.float32)
    coeffs = rng.normal(size=32).astype(np.float32)
    first = reconstruct_mask(coeffs, protos)
    second = reconstruct_mask(coeffs, protos)
    assert np.array_equal(first, second)


def test_reconstruct_coefficient_mismatch():
    with pytest.raises(ModelError):
        reconstruct_mask(np.ones(3), np.zeros((2, 4, 4)))


def test_crop_cells_outside_box_are_cleared():
    mask = np.ones((16, 16), dtype=np.float32)
    binary = crop_mask(mask, (16, 32, 48, 64), input_size=64)
    # box covers cells x 4..11, y 8..15
    assert binary.dtype == np.uint8
    assert binary.sum() == 8 * 8
    assert binary[8:16, 4:12].all()
    assert not binary[:8].any()


def test_crop_binarizes_at_zero():
    mask = np.full((8, 8), -0.1, dtype=np.float32)
    mask[2:4, 2:4] = 0.1
    mask[5, 5] = 0.0
    binary = crop_mask(mask, (0, 0, 8, 8), input_size=8)
    assert binary.sum() == 4
    assert binary[5, 5] == 0


def test_crop_fractional_box_expands_outward():
    mask = np.ones((8, 8), dtype=np.float32)
    binary = crop_mask(mask, (1.5, 1.5, 2.5, 2.5), input_size=8)
    assert binary[1:3, 1:3].all()
    assert binary.sum() == 4


def test_crop_box_outside_grid():
    mask = np.ones((8, 8), dtype=np.float32)
    assert crop_mask(mask, (20, 20, 30, 30), input_size=8).sum() == 0


def test_contour_speckle_removed_by_opening():
    binary = np.zeros((64, 64), dtype=np.uint8)
    binary[10:30, 10:30] = 1
    binary[50, 50] = 1

    contour, area = extract_contour(binary, 3)

    assert contour.shape[1] == 2
    assert contour[:, 0].min() >= 9 and contour[:, 0].max() <= 30
    assert area > 300


def test_contour_single_pixel_has_no_outline():
    binary = np.zeros((16, 16), dtype=np.uint8)
    binary[8, 8] = 1
    assert extract_contour(binary, 3) is None


def test_contour_empty_mask():
    assert extract_contour(np.zeros((16, 16), dtype=np.uint8), 3) is None


def test_filter_accepts_small_compact_mask():
    assert passes_filters(stats(600, 25, 24), 256, MaskConfig())


def test_filter_rejects_large_mask():
    # 3000 / 65536 > 0.03
    assert not passes_filters(stats(3000, 55, 55), 256, MaskConfig())


def test_filter_rejects_elongated_mid_size_mask():
    assert not passes_filters(stats(1000, 10, 60), 256, MaskConfig())


def test_filter_keeps_elongated_small_mask():
    # below min_area_ratio the elongation check does not apply
    assert passes_filters(stats(300, 10, 60), 256, MaskConfig())


def test_filter_rejects_degenerate_rectangle():
    assert not passes_filters(stats(50, 0, 10), 256, MaskConfig())


def test_smoothing_weights_are_symmetric():
    weights = gaussian_weights(2, 0.75)
    assert weights.shape == (5,)
    assert weights[2] == pytest.approx(1.0)
    np.testing.assert_allclose(weights, weights[::-1])


def test_smoothing_preserves_point_count_and_centroid():
    ring = circle() + np.random.default_rng(1).normal(scale=2.0, size=(64, 2))
    smoothed = smooth_ring(ring, 2, 0.75)
    assert smoothed.shape == ring.shape
    np.testing.assert_allclose(smoothed.mean(axis=0), ring.mean(axis=0))


def test_smoothing_window_wraps_around_seam():
    ring = np.zeros((10, 2))
    ring[0] = (10.0, 10.0)
    smoothed = smooth_ring(ring, 2, 0.75)
    # the outlier at index 0 pulls on both its neighbours across the seam
    assert smoothed[1, 0] > 0
    assert smoothed[-1, 0] > 0
    assert smoothed[1, 0] == pytest.approx(smoothed[-1, 0])
    assert smoothed[5, 0] == 0


def test_smoothing_zero_radius_is_identity():
    ring = circle()
    np.testing.assert_allclose(smooth_ring(ring, 0, 0.75), ring)


def test_expansion_area_grows_monotonically():
    ring = circle()
    areas = [polygon_area(expand_ring(ring, ring, d)) for d in (0, 1, 5, 10)]
    assert areas == sorted(areas)
    assert areas[0] < areas[-1]


def test_expansion_moves_points_by_distance():
    ring = circle(radius=50.0, center=(0.0, 0.0))
    expanded = expand_ring(ring, ring, 5.0)
    np.testing.assert_allclose(np.hypot(expanded[:, 0], expanded[:, 1]), 55.0)


def test_expansion_point_on_centroid_stays():
    reference = np.array([[-1.0, 0.0], [1.0, 0.0]])
    points = np.array([[0.0, 0.0], [10.0, 0.0]])
    expanded = expand_ring(points, reference, 3.0)
    np.testing.assert_allclose(expanded, [[0.0, 0.0], [13.0, 0.0]])


def test_mask_to_polygon_for_square_blob():
    # a 20x20 cell blob at cells 100..119 on a 256 grid, 1024 input
    protos = np.full((2, 256, 256), -1.0, dtype=np.float32)
    protos[0, 100:120, 100:120] = 1.0
    detection = Detection(
        box=(400.0, 400.0, 480.0, 480.0),
        confidence=0.8,
        anchor_index=0,
        mask_coefficients=np.array([1.0, 0.0], dtype=np.float32),
    )
    letterbox = Letterbox.fit(1024, 1024, 1024)

    polygon = mask_to_polygon(detection, protos, letterbox, MaskConfig())
    again = mask_to_polygon(detection, protos, letterbox, MaskConfig())

    assert polygon is not None
    assert polygon == again
    assert polygon.confidence == pytest.approx(0.8)
    assert len(polygon) >= 4
    pts = polygon.to_array()
    assert pts.min() >= 385 and pts.max() <= 490


def test_mask_to_polygon_rejects_large_blob():
    protos = np.full((1, 256, 256), -1.0, dtype=np.float32)
    protos[0, 50:150, 50:150] = 1.0
    detection = Detection(
        box=(200.0, 200.0, 600.0, 600.0),
        confidence=0.8,
        anchor_index=0,
        mask_coefficients=np.array([1.0], dtype=np.float32),
    )
    letterbox = Letterbox.fit(1024, 1024, 1024)
    assert mask_to_polygon(detection, protos, letterbox, MaskConfig()) is None
