"""
Snapshot Assembler
Maintains the latest known state of every entity and signal from the inbound
feed and freezes it into one NetworkSnapshot per evaluation cycle.

Feed guarantees:
- Per-entity timestamps never go backwards in the live state
- Updates up to late_window_seconds behind the latest one only enrich the
  trajectory history; older ones are dropped and logged
- Snapshot ids and timestamps are strictly increasing
"""

import json
import logging
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import FeedConfig, feed_config
from ..errors import ValidationError
from ..models import (
    Direction, EntityState, EntityStatus, Junction, MovementKind, NetworkSnapshot,
    Route, RouteTopology, ScheduledMovement, Segment, SignalAspect, SignalState,
    Station, StationDwell, SwitchPosition, TrajectoryPoint,
)

logger = logging.getLogger(__name__)


def _parse_time(value) -> datetime:
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Inbound updates
# =============================================================================

@dataclass(frozen=True)
class EntityUpdate:
    entity_id: str
    segment_id: str
    offset_m: float
    speed_kmh: float
    direction: Direction
    at: datetime
    status: EntityStatus = EntityStatus.RUNNING
    route_id: Optional[str] = None
    heading_deg: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict) -> "EntityUpdate":
        try:
            return cls(
                entity_id=str(data["entity_id"]),
                segment_id=str(data["segment_id"]),
                offset_m=float(data["offset_m"]),
                speed_kmh=float(data["speed_kmh"]),
                direction=Direction(data.get("direction", "forward")),
                at=_parse_time(data["at"]),
                status=EntityStatus(data.get("status", "running")),
                route_id=data.get("route_id"),
                heading_deg=float(data.get("heading_deg", 0.0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Malformed entity update: {e}", [str(data.get("entity_id", "?"))]
            ) from e


@dataclass(frozen=True)
class SignalUpdate:
    signal_id: str
    aspect: SignalAspect
    segment_id: str
    at: datetime
    affected_entity_ids: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> "SignalUpdate":
        try:
            return cls(
                signal_id=str(data["signal_id"]),
                aspect=SignalAspect(data["aspect"]),
                segment_id=str(data["segment_id"]),
                at=_parse_time(data["at"]),
                affected_entity_ids=tuple(sorted(data.get("affected_entity_ids", ()))),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Malformed signal update: {e}", [str(data.get("signal_id", "?"))]
            ) from e


# =============================================================================
# Topology loading
# =============================================================================

def load_topology(data_or_path) -> RouteTopology:
    """
    Build the static topology from a dict or a JSON file with
    "segments", "junctions", "stations" and "routes" lists.
    """
    if isinstance(data_or_path, dict):
        data = data_or_path
    else:
        with open(data_or_path, "r", encoding="utf-8") as f:
            data = json.load(f)

    segments = [
        Segment(
            id=s["id"],
            from_node=s["from_node"],
            to_node=s["to_node"],
            length_m=float(s["length_m"]),
            speed_limit_kmh=float(s["speed_limit_kmh"]),
            capacity=int(s["capacity"]),
            occupancy=int(s.get("occupancy", 0)),
        )
        for s in data.get("segments", [])
    ]
    junctions = [
        Junction(
            id=j["id"],
            switch_position=SwitchPosition(j.get("switch_position", "normal")),
            segment_ids=tuple(j.get("segment_ids", ())),
        )
        for j in data.get("junctions", [])
    ]
    stations = [
        Station(
            id=s["id"],
            name=s.get("name", s["id"]),
            segment_id=s["segment_id"],
            platforms=int(s.get("platforms", 1)),
        )
        for s in data.get("stations", [])
    ]
    routes = [
        Route(
            id=r["id"],
            segment_ids=tuple(r["segment_ids"]),
            junction_requirements=tuple(
                sorted((jid, SwitchPosition(pos)) for jid, pos in r.get("junction_requirements", {}).items())
            ),
            station_dwells=tuple(
                StationDwell(d["station_id"], _parse_time(d["arrive_at"]), _parse_time(d["depart_at"]))
                for d in r.get("station_dwells", [])
            ),
        )
        for r in data.get("routes", [])
    ]

    topology = RouteTopology.build(segments, junctions, stations, routes)
    logger.info(
        f"Loaded topology: {len(topology.segments)} segments, {len(topology.junctions)} junctions, "
        f"{len(topology.stations)} stations, {len(topology.routes)} routes"
    )
    return topology


# =============================================================================
# Assembler
# =============================================================================

class SnapshotAssembler:
    """
    Collects feed updates and builds immutable snapshots.

    Ingestion holds the lock only long enough to replace one dict entry, so
    it never waits on an evaluation cycle.
    """

    def __init__(
        self,
        topology: RouteTopology,
        config: FeedConfig = feed_config,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.topology = topology
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

        self._entities: Dict[str, EntityState] = {}
        self._signals: Dict[str, SignalState] = {}
        self._signal_seen_at: Dict[str, datetime] = {}
        self._movements: List[ScheduledMovement] = []

        self._last_snapshot_id = 0
        self._last_taken_at: Optional[datetime] = None

        self._accepted = 0
        self._merged_late = 0
        self._dropped_late = 0

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def ingest_entity(self, update: EntityUpdate) -> bool:
        """
        Apply one entity update.

        Returns False when the update was dropped for being too late.
        """
        point = TrajectoryPoint(update.at, update.segment_id, update.offset_m, update.speed_kmh)

        with self._lock:
            current = self._entities.get(update.entity_id)

            if current is not None and update.at < current.last_update:
                lag = (current.last_update - update.at).total_seconds()
                if lag > self.config.late_window_seconds:
                    self._dropped_late += 1
                    logger.warning(
                        f"Dropped update for {update.entity_id}: {lag:.1f}s behind latest "
                        f"(late window {self.config.late_window_seconds:.0f}s)"
                    )
                    return False
                trajectory = tuple(sorted(current.trajectory + (point,), key=lambda p: p.at))
                self._entities[update.entity_id] = replace(
                    current, trajectory=trajectory[-self.config.trajectory_length:]
                )
                self._merged_late += 1
                logger.debug(f"Merged late update for {update.entity_id} into trajectory ({lag:.1f}s)")
                return True

            history = current.trajectory if current is not None else ()
            self._entities[update.entity_id] = EntityState(
                id=update.entity_id,
                segment_id=update.segment_id,
                offset_m=update.offset_m,
                speed_kmh=update.speed_kmh,
                direction=update.direction,
                route_id=update.route_id,
                status=update.status,
                last_update=update.at,
                heading_deg=update.heading_deg,
                trajectory=(history + (point,))[-self.config.trajectory_length:],
            )
            self._accepted += 1
            return True

    def ingest_signal(self, update: SignalUpdate) -> bool:
        """Apply one signal update. Updates older than the latest seen are dropped."""
        with self._lock:
            seen_at = self._signal_seen_at.get(update.signal_id)
            if seen_at is not None and update.at < seen_at:
                self._dropped_late += 1
                logger.warning(
                    f"Dropped stale aspect for signal {update.signal_id} "
                    f"({(seen_at - update.at).total_seconds():.1f}s old)"
                )
                return False

            current = self._signals.get(update.signal_id)
            changed_at = update.at
            if current is not None and current.aspect == update.aspect:
                changed_at = current.changed_at or update.at

            self._signals[update.signal_id] = SignalState(
                id=update.signal_id,
                aspect=update.aspect,
                segment_id=update.segment_id,
                affected_entity_ids=tuple(sorted(update.affected_entity_ids)),
                changed_at=changed_at,
            )
            self._signal_seen_at[update.signal_id] = update.at
            self._accepted += 1
            return True

    def ingest(self, message: Dict) -> bool:
        """Apply a raw feed message of type "entity" or "signal"."""
        kind = message.get("type")
        if kind == "entity":
            return self.ingest_entity(EntityUpdate.from_dict(message))
        if kind == "signal":
            return self.ingest_signal(SignalUpdate.from_dict(message))
        raise ValidationError(f"Unknown feed message type: {kind!r}")

    def set_scheduled_movements(self, movements: Iterable[ScheduledMovement]) -> None:
        with self._lock:
            self._movements = sorted(movements, key=lambda m: (m.at, m.segment_id, m.entity_id))

    def remove_entity(self, entity_id: str) -> None:
        with self._lock:
            self._entities.pop(entity_id, None)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def build(self, at: Optional[datetime] = None) -> NetworkSnapshot:
        """
        Freeze the current state into a snapshot.

        Entities failing validation are excluded and listed on the snapshot.
        """
        with self._lock:
            entities = dict(self._entities)
            signals = dict(self._signals)
            movements = tuple(self._movements)

            taken_at = at or self._clock()
            if self._last_taken_at is not None and taken_at <= self._last_taken_at:
                taken_at = self._last_taken_at + timedelta(microseconds=1)
            self._last_taken_at = taken_at
            self._last_snapshot_id += 1
            snapshot_id = self._last_snapshot_id

        valid: Dict[str, EntityState] = {}
        excluded: List[str] = []
        for entity_id in sorted(entities):
            try:
                self.validate_entity(entities[entity_id])
            except ValidationError as e:
                logger.warning(f"Snapshot {snapshot_id}: excluded entity. {e.describe()}")
                excluded.append(entity_id)
                continue
            valid[entity_id] = entities[entity_id]

        valid_signals: Dict[str, SignalState] = {}
        for signal_id in sorted(signals):
            signal = signals[signal_id]
            if signal.segment_id not in self.topology.segments:
                logger.warning(
                    f"Snapshot {snapshot_id}: ignored signal {signal_id} guarding unknown "
                    f"segment {signal.segment_id}"
                )
                continue
            valid_signals[signal_id] = signal

        return NetworkSnapshot(
            snapshot_id=snapshot_id,
            taken_at=taken_at,
            entities=valid,
            signals=valid_signals,
            topology=self.topology,
            scheduled_movements=tuple(m for m in movements if m.at >= taken_at),
            excluded_entity_ids=tuple(excluded),
        )

    def validate_entity(self, entity: EntityState) -> None:
        segment = self.topology.segments.get(entity.segment_id)
        if segment is None:
            raise ValidationError(f"unknown segment {entity.segment_id}", [entity.id])
        for name in ("offset_m", "speed_kmh", "heading_deg"):
            value = getattr(entity, name)
            if not math.isfinite(value):
                raise ValidationError(f"{name} is not finite ({value})", [entity.id])
        if entity.speed_kmh < 0:
            raise ValidationError(f"negative speed {entity.speed_kmh}", [entity.id])
        if not 0.0 <= entity.offset_m <= segment.length_m:
            raise ValidationError(
                f"offset {entity.offset_m:.0f}m outside segment {segment.id} "
                f"(length {segment.length_m:.0f}m)",
                [entity.id],
            )
        if entity.route_id is not None and entity.route_id not in self.topology.routes:
            raise ValidationError(f"unknown route {entity.route_id}", [entity.id])

    def get_statistics(self) -> Dict:
        with self._lock:
            return {
                "entities": len(self._entities),
                "signals": len(self._signals),
                "accepted_updates": self._accepted,
                "merged_late_updates": self._merged_late,
                "dropped_late_updates": self._dropped_late,
                "last_snapshot_id": self._last_snapshot_id,
            }


def movement_from_dict(data: Dict) -> ScheduledMovement:
    return ScheduledMovement(
        entity_id=data["entity_id"],
        segment_id=data["segment_id"],
        kind=MovementKind(data["kind"]),
        at=_parse_time(data["at"]),
    )
