"""
Route guessing from recent vehicle positions.

Every recent update is compared against every route. For each pair the
nearest route coordinate is found using plain Euclidean distance in degrees
(routes are small enough that projection does not matter for ranking).
Samples farther than ``CLOSE_THRESHOLD_DEG`` from a route get a large fixed
penalty, so a vehicle only registers on a route after most of its recent
samples sit on that route's path.

Disabled routes and routes with no coordinates are never measured; they score
``inf`` and can only "win" when nothing else is scoreable, at which point the
absolute threshold rejects them anyway.
"""

from __future__ import annotations

import math
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from shuttle_models import Route, Update, Vehicle


# Window of history considered for a guess
RECENT_WINDOW = timedelta(minutes=15)

# Don't make a guess with fewer samples than this
MIN_RECENT_UPDATES = 5

# Distance (degrees) beyond which a sample is considered off a route
CLOSE_THRESHOLD_DEG = 0.003

# Added to a sample's distance when it is off a route
FAR_PENALTY = 50.0

# Roughly: more than ~10% of samples far from the best route means no route
MAX_AVERAGE_DISTANCE = 5.0


def nearest_distance(lat: float, lng: float, route: Route) -> float:
    """Smallest distance from the point to any coordinate on the route."""
    nearest = math.inf
    for coord in route.coords:
        distance = math.sqrt((lat - coord.lat) ** 2 + (lng - coord.lng) ** 2)
        if distance < nearest:
            nearest = distance
    return nearest


def score_routes(updates: Sequence[Update], routes: Iterable[Route]) -> Dict[str, float]:
    """Average penalized distance per route id over the given updates."""
    route_list = list(routes)
    totals: Dict[str, float] = {route.id: 0.0 for route in route_list}
    if not updates:
        return {route_id: math.inf for route_id in totals}

    for update in updates:
        for route in route_list:
            if not route.enabled or not route.coords:
                totals[route.id] = math.inf
                continue
            distance = nearest_distance(update.latitude, update.longitude, route)
            if distance > CLOSE_THRESHOLD_DEG:
                distance += FAR_PENALTY
            totals[route.id] += distance

    count = float(len(updates))
    return {route_id: total / count for route_id, total in totals.items()}


def select_route(averages: Dict[str, float]) -> Optional[str]:
    """Pick the route id with the lowest average, or None when too far.

    Ties go to the lowest route id.
    """
    if not averages:
        return None
    best_id = min(averages, key=lambda route_id: (averages[route_id], route_id))
    if averages[best_id] > MAX_AVERAGE_DISTANCE:
        return None
    return best_id


def guess_route(
    vehicle: Vehicle,
    updates: Sequence[Update],
    routes: Iterable[Route],
    *,
    debug: bool = False,
) -> Optional[Route]:
    """Guess which route the vehicle is on from its recent updates.

    Returns None if the vehicle does not appear to be on any route.
    """
    if len(updates) < MIN_RECENT_UPDATES:
        if debug:
            print(
                f"[route-guess] {vehicle.name} has too few recent updates "
                f"({len(updates)}) to guess route"
            )
        return None

    route_list: List[Route] = list(routes)
    averages = score_routes(updates, route_list)
    best_id = select_route(averages)
    if best_id is None:
        if debug:
            nearest = min(averages.values(), default=math.inf)
            print(f"[route-guess] {vehicle.name} not on route; distance from nearest: {nearest}")
        return None

    for route in route_list:
        if route.id == best_id:
            if debug:
                print(f"[route-guess] {vehicle.name} on {route.name} route")
            return route
    return None
