"""
Routing Risk Analysis
=====================

Scores every active route (a route used by at least one entity in the
snapshot) against the other active routes:

    score = 100 * (0.45 * shared_segments
                   + 0.35 * junction_violations
                   + 0.20 * dwell_overlaps)

Each sub-score is a ratio in [0, 1]. A sub-score that cannot be computed
counts as 1.0.
"""

import logging
import math
from typing import Dict, List, Set, Tuple

from ..config import RoutingConfig, routing_config
from ..errors import CalculationError
from ..models import NetworkSnapshot, Route, RouteTopology, RoutingRisk

logger = logging.getLogger(__name__)


class RoutingRiskAnalyzer:
    def __init__(self, config: RoutingConfig = routing_config):
        self.config = config

    def active_routes(self, snapshot: NetworkSnapshot) -> Dict[str, Tuple[str, ...]]:
        """Route id -> ids of the entities using it."""
        users: Dict[str, List[str]] = {}
        for entity_id in sorted(snapshot.entities):
            route_id = snapshot.entities[entity_id].route_id
            if route_id is not None and route_id in snapshot.topology.routes:
                users.setdefault(route_id, []).append(entity_id)
        return {route_id: tuple(ids) for route_id, ids in sorted(users.items())}

    def analyze(self, snapshot: NetworkSnapshot) -> List[RoutingRisk]:
        topology = snapshot.topology
        active = self.active_routes(snapshot)
        routes = [topology.routes[route_id] for route_id in active]

        risks = []
        for route in routes:
            others = [r for r in routes if r.id != route.id]

            shared_ids, shared_with = self._shared_segments(route, others)
            junction_violations, junction_with = self._junction_violations(route, others, topology)
            dwell_overlaps, dwell_with = self._dwell_overlaps(route, others, topology)

            shared_score = self._safe(
                route.id, "shared_segments",
                lambda: len(shared_ids) / len(route.segment_ids) if route.segment_ids else 0.0,
            )
            junction_score = self._safe(
                route.id, "junctions",
                lambda: junction_violations / len(route.junction_requirements)
                if route.junction_requirements else 0.0,
            )
            dwell_score = self._safe(
                route.id, "dwell_overlaps",
                lambda: dwell_overlaps / len(route.station_dwells) if route.station_dwells else 0.0,
            )

            score = 100.0 * (
                self.config.shared_segment_weight * shared_score
                + self.config.junction_weight * junction_score
                + self.config.dwell_overlap_weight * dwell_score
            )

            risks.append(RoutingRisk(
                route_id=route.id,
                entity_ids=active[route.id],
                score=min(max(score, 0.0), 100.0),
                shared_segment_score=shared_score,
                junction_score=junction_score,
                dwell_overlap_score=dwell_score,
                conflicting_route_ids=tuple(sorted(shared_with | junction_with | dwell_with)),
                shared_segment_ids=tuple(sorted(shared_ids)),
            ))
        return risks

    # =========================================================================
    # Factors
    # =========================================================================

    @staticmethod
    def _shared_segments(route: Route, others: List[Route]) -> Tuple[Set[str], Set[str]]:
        own = set(route.segment_ids)
        shared: Set[str] = set()
        with_routes: Set[str] = set()
        for other in others:
            common = own & set(other.segment_ids)
            if common:
                shared |= common
                with_routes.add(other.id)
        return shared, with_routes

    @staticmethod
    def _junction_violations(
        route: Route, others: List[Route], topology: RouteTopology
    ) -> Tuple[int, Set[str]]:
        """Requirements contradicted by the current switch or another active route."""
        violations = 0
        with_routes: Set[str] = set()
        for junction_id, required in route.junction_requirements:
            junction = topology.junctions.get(junction_id)
            violated = junction is None or junction.switch_position != required
            for other in others:
                other_required = other.requirements.get(junction_id)
                if other_required is not None and other_required != required:
                    violated = True
                    with_routes.add(other.id)
            if violated:
                violations += 1
        return violations, with_routes

    @staticmethod
    def _dwell_overlaps(
        route: Route, others: List[Route], topology: RouteTopology
    ) -> Tuple[int, Set[str]]:
        """Dwells whose concurrent occupancy exceeds the station's platform count."""
        overlaps = 0
        with_routes: Set[str] = set()
        for dwell in route.station_dwells:
            station = topology.stations.get(dwell.station_id)
            platforms = station.platforms if station is not None else 1
            concurrent = [
                other.id
                for other in others
                for other_dwell in other.station_dwells
                if dwell.overlaps(other_dwell)
            ]
            if 1 + len(concurrent) > platforms:
                overlaps += 1
                with_routes |= set(concurrent)
        return overlaps, with_routes

    @staticmethod
    def _safe(route_id: str, factor: str, compute) -> float:
        try:
            value = float(compute())
            if not math.isfinite(value):
                raise CalculationError(f"{factor} sub-score is {value}", [route_id])
        except (CalculationError, ZeroDivisionError) as e:
            error = e if isinstance(e, CalculationError) else CalculationError(str(e), [route_id])
            logger.error(f"{error.describe()}; treating {factor} as maximum risk")
            return 1.0
        return min(max(value, 0.0), 1.0)
