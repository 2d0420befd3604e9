"""
Congestion Monitor
==================

Segment load levels and a short-horizon forecast.

    level = occupancy / capacity

where occupancy is the larger of the declared baseline and the number of
entities assigned in the snapshot. A segment is overloaded at level >= 0.8.
"""

import logging
import math
from typing import Dict, Iterable, List, Optional

from ..config import CongestionConfig, congestion_config
from ..errors import CalculationError
from ..models import (
    CongestionMetrics, CongestionState, CongestionTrend, MovementKind,
    NetworkSnapshot, ScheduledMovement, Segment, TrendDirection,
)

logger = logging.getLogger(__name__)


class CongestionMonitor:
    def __init__(self, config: CongestionConfig = congestion_config):
        self.config = config

    def compute_congestion(self, snapshot: NetworkSnapshot) -> List[CongestionMetrics]:
        """Load metrics for every segment of the topology, ordered by segment id."""
        metrics = []
        for segment_id in sorted(snapshot.topology.segments):
            segment = snapshot.topology.segments[segment_id]
            entities = snapshot.entities_on_segment(segment_id)
            occupancy = max(segment.occupancy, len(entities))
            level = self._level(segment, occupancy)
            metrics.append(CongestionMetrics(
                segment_id=segment_id,
                occupancy=occupancy,
                capacity=segment.capacity,
                level=level,
                state=self.classify(level),
                entity_ids=tuple(e.id for e in entities),
            ))
        return metrics

    def classify(self, level: float) -> CongestionState:
        if level >= self.config.overload_threshold:
            return CongestionState.OVERLOAD
        if level >= self.config.busy_threshold:
            return CongestionState.BUSY
        return CongestionState.NORMAL

    def _level(self, segment: Segment, occupancy: float) -> float:
        """Occupancy ratio; impossible ratios are reported as the maximum level."""
        try:
            if segment.capacity <= 0:
                if occupancy <= 0:
                    return 0.0
                raise CalculationError(
                    f"capacity {segment.capacity} with occupancy {occupancy}", [segment.id]
                )
            level = occupancy / segment.capacity
            if not math.isfinite(level):
                raise CalculationError(f"non-finite level {level}", [segment.id])
            return max(level, 0.0)
        except CalculationError as e:
            logger.error(f"{e.describe()}; reporting level {self.config.max_reported_level}")
            return self.config.max_reported_level

    # =========================================================================
    # Forecast
    # =========================================================================

    def forecast(
        self,
        snapshot: NetworkSnapshot,
        scheduled_movements: Optional[Iterable[ScheduledMovement]] = None,
        horizon_minutes: Optional[int] = None,
    ) -> List[CongestionTrend]:
        """
        Linear projection of net flow for segments with scheduled movements.

        Net flow is (arrivals - departures) within the horizon divided by the
        horizon; projected occupancy is sampled every forecast_step_minutes.
        """
        horizon = horizon_minutes or self.config.forecast_horizon_minutes
        movements = (
            scheduled_movements if scheduled_movements is not None
            else snapshot.scheduled_movements
        )

        arrivals: Dict[str, int] = {}
        departures: Dict[str, int] = {}
        for movement in movements:
            minutes_ahead = (movement.at - snapshot.taken_at).total_seconds() / 60.0
            if not 0.0 <= minutes_ahead <= horizon:
                continue
            if movement.segment_id not in snapshot.topology.segments:
                logger.warning(
                    f"Scheduled movement of {movement.entity_id} on unknown segment "
                    f"{movement.segment_id} ignored"
                )
                continue
            counts = arrivals if movement.kind == MovementKind.ARRIVAL else departures
            counts[movement.segment_id] = counts.get(movement.segment_id, 0) + 1

        trends = []
        for segment_id in sorted(set(arrivals) | set(departures)):
            segment = snapshot.topology.segments[segment_id]
            trends.append(self._project(
                snapshot, segment,
                arrivals.get(segment_id, 0), departures.get(segment_id, 0), horizon,
            ))
        return trends

    def _project(
        self,
        snapshot: NetworkSnapshot,
        segment: Segment,
        arriving: int,
        departing: int,
        horizon: int,
    ) -> CongestionTrend:
        occupancy = max(segment.occupancy, len(snapshot.entities_on_segment(segment.id)))
        net_flow = (arriving - departing) / horizon

        step = max(self.config.forecast_step_minutes, 1)
        minutes = list(range(0, horizon + 1, step))
        if minutes[-1] != horizon:
            minutes.append(horizon)
        points = tuple((m, max(occupancy + net_flow * m, 0.0)) for m in minutes)

        current_level = self._level(segment, occupancy)
        projected_level = self._level(segment, points[-1][1])
        peak_level = max(self._level(segment, occ) for _, occ in points)

        if net_flow > self.config.stable_flow_epsilon:
            trend = TrendDirection.RISING
        elif net_flow < -self.config.stable_flow_epsilon:
            trend = TrendDirection.FALLING
        else:
            trend = TrendDirection.STABLE

        minutes_to_overload = None
        if current_level >= self.config.overload_threshold:
            minutes_to_overload = 0.0
        elif trend == TrendDirection.RISING and segment.capacity > 0:
            needed = self.config.overload_threshold * segment.capacity - occupancy
            eta = needed / net_flow
            if eta <= horizon:
                minutes_to_overload = round(eta, 1)

        explanation = (
            f"{arriving} arrivals and {departing} departures in the next {horizon} min "
            f"(net {net_flow:+.2f}/min): level {current_level:.0%} -> {projected_level:.0%}"
        )
        if minutes_to_overload is not None:
            explanation += f", overload in {minutes_to_overload:.0f} min"

        return CongestionTrend(
            segment_id=segment.id,
            current_level=current_level,
            projected_level=projected_level,
            peak_level=peak_level,
            net_flow_per_min=net_flow,
            trend=trend,
            minutes_to_overload=minutes_to_overload,
            points=points,
            explanation=explanation,
        )
