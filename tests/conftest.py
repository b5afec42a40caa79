import numpy as np
import pytest

from GeoDbscan import DEGREE_RAD, EARTH_R, Point


# (longitude, latitude) around Saint Petersburg
SPB_COORDS = [
    (30.244759, 59.955982),
    (30.24472, 59.955975),
    (30.244358, 59.96698),
    (30.258387, 59.951557),
    (30.434124, 60.029499),
]


def kmToDegrees(km: float) -> float:
    return km / (EARTH_R * DEGREE_RAD)


@pytest.fixture
def spb_points():
    return [Point(c) for c in SPB_COORDS]


@pytest.fixture
def random_points():
    """Blobs of points with a share of exact duplicates."""
    rng = np.random.default_rng(42)
    centers = rng.uniform((30.1, 59.8), (30.5, 60.1), size=(6, 2))
    coords = np.concatenate([
        center + rng.normal(scale=0.004, size=(40, 2)) for center in centers
    ] + [rng.uniform((30.1, 59.8), (30.5, 60.1), size=(30, 2))])
    points = [Point(c) for c in coords]
    points.extend(points[i] for i in rng.integers(0, len(points), size=25))
    return points


@pytest.fixture
def grid_points():
    """Points snapped to a coarse grid, so that many coordinates repeat exactly."""
    rng = np.random.default_rng(7)
    coords = np.round(rng.uniform((30.0, 59.9), (30.03, 59.92), size=(300, 2)), 3)
    return [Point(c) for c in coords]
