import pytest

from ble_fusion_server.geometry import euclidean_distance, haversine_distance, point_in_polygon


SQUARE = [[0, 0], [10, 0], [10, 10], [0, 10]]


def test_point_in_square():
    assert point_in_polygon((5, 5), SQUARE)
    assert not point_in_polygon((15, 5), SQUARE)
    assert not point_in_polygon((-1, -1), SQUARE)


def test_concave_polygon():
    # L shape, the notch at the top right is outside
    shape = [[0, 0], [10, 0], [10, 5], [5, 5], [5, 10], [0, 10]]
    assert point_in_polygon((2, 8), shape)
    assert not point_in_polygon((8, 8), shape)


def test_degenerate_polygon_is_never_entered():
    assert not point_in_polygon((0, 0), [])
    assert not point_in_polygon((1, 1), [[0, 0], [2, 2]])


def test_distances():
    assert euclidean_distance(0, 0, 3, 4) == 5
    # one degree of latitude is about 111 km
    assert haversine_distance(52.0, 13.0, 53.0, 13.0) == pytest.approx(111_195, rel=1e-3)
    assert haversine_distance(52.0, 13.0, 52.0, 13.0) == 0
