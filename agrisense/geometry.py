"""
Field geometry helpers.

Rings are sequences of (latitude, longitude) pairs in decimal degrees, in the
order the map client sends them. The ring does not need to be closed.
"""
from typing import Sequence, Tuple

# Flat-earth approximation: one degree is taken as 111 km on both axes.
# This is not a geodesic projection and overstates east-west extent away
# from the equator.
METERS_PER_DEGREE = 111000
SQUARE_METERS_PER_HECTARE = 10000

Coordinate = Sequence[float]


def calculate_area_hectares(coordinates: Sequence[Coordinate]) -> float:
    """
    Calculate field area using the shoelace formula

    Args:
        coordinates: ring of at least 3 (lat, lng) pairs

    Returns:
        Area in hectares, rounded to 4 decimal places. Collinear rings give 0.

    Raises:
        ValueError: if fewer than 3 points are given
    """
    n = len(coordinates)
    if n < 3:
        raise ValueError(f"A field ring needs at least 3 points, got {n}")

    twice_area = 0.0
    for i in range(n):
        j = (i + 1) % n
        twice_area += coordinates[i][0] * coordinates[j][1]
        twice_area -= coordinates[j][0] * coordinates[i][1]

    square_degrees = abs(twice_area) / 2
    square_meters = square_degrees * METERS_PER_DEGREE * METERS_PER_DEGREE
    return round(square_meters / SQUARE_METERS_PER_HECTARE, 4)


def ring_center(coordinates: Sequence[Coordinate]) -> Tuple[float, float]:
    """Vertex average of a ring; used when the client omits a center point"""
    if not coordinates:
        raise ValueError("Cannot compute the center of an empty ring")

    points = list(coordinates)
    # Drop the closing vertex so it is not counted twice
    if len(points) > 1 and tuple(points[0]) == tuple(points[-1]):
        points = points[:-1]

    lat = sum(p[0] for p in points) / len(points)
    lng = sum(p[1] for p in points) / len(points)
    return round(lat, 8), round(lng, 8)
