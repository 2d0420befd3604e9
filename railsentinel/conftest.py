"""
Shared fixtures for the rail sentinel test suite.

Test network (node ids in brackets):

    [A] --S1 (6000m, 120km/h, cap 3)--> [B] --S2 (3000m, 80km/h, cap 2)--> [C] --S5 (cap 0)--> [E]
    [A] --S3 (2000m)--> [D] --S4 (2000m)--> [B]

Junction J1 sits at B (switch NORMAL). Routes R1 (S1, S2) and R2 (S3, S4, S2)
require opposite J1 positions and dwell at the single-platform station ST1
during overlapping windows.
"""

from datetime import datetime, timedelta, timezone

import pytest

from railsentinel.config import SentinelConfig
from railsentinel.models import (
    Direction, EntityState, EntityStatus, Junction, NetworkSnapshot, Route,
    RouteTopology, Segment, SignalAspect, SignalState, Station, StationDwell,
    SwitchPosition, TrajectoryPoint,
)

T0 = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Topology
# =============================================================================

@pytest.fixture
def t0():
    return T0


@pytest.fixture
def topology():
    """Small network with a detour around S1."""
    segments = [
        Segment("S1", "A", "B", length_m=6000.0, speed_limit_kmh=120.0, capacity=3),
        Segment("S2", "B", "C", length_m=3000.0, speed_limit_kmh=80.0, capacity=2),
        Segment("S3", "A", "D", length_m=2000.0, speed_limit_kmh=100.0, capacity=2),
        Segment("S4", "D", "B", length_m=2000.0, speed_limit_kmh=100.0, capacity=2),
        Segment("S5", "C", "E", length_m=1000.0, speed_limit_kmh=60.0, capacity=0),
    ]
    junctions = [Junction("J1", SwitchPosition.NORMAL, ("S1", "S2", "S4"))]
    stations = [
        Station("ST1", "Central", "S2", platforms=1),
        Station("ST2", "Halt", "S1", platforms=2),
    ]
    routes = [
        Route(
            "R1", ("S1", "S2"),
            junction_requirements=(("J1", SwitchPosition.NORMAL),),
            station_dwells=(StationDwell("ST1", T0 + timedelta(minutes=5), T0 + timedelta(minutes=10)),),
        ),
        Route(
            "R2", ("S3", "S4", "S2"),
            junction_requirements=(("J1", SwitchPosition.REVERSE),),
            station_dwells=(StationDwell("ST1", T0 + timedelta(minutes=7), T0 + timedelta(minutes=12)),),
        ),
        Route("R3", ("S5",)),
    ]
    return RouteTopology.build(segments, junctions, stations, routes)


@pytest.fixture
def topology_dict():
    """The same network as raw JSON-compatible data."""
    return {
        "segments": [
            {"id": "S1", "from_node": "A", "to_node": "B", "length_m": 6000, "speed_limit_kmh": 120, "capacity": 3},
            {"id": "S2", "from_node": "B", "to_node": "C", "length_m": 3000, "speed_limit_kmh": 80, "capacity": 2},
            {"id": "S3", "from_node": "A", "to_node": "D", "length_m": 2000, "speed_limit_kmh": 100, "capacity": 2},
            {"id": "S4", "from_node": "D", "to_node": "B", "length_m": 2000, "speed_limit_kmh": 100, "capacity": 2},
            {"id": "S5", "from_node": "C", "to_node": "E", "length_m": 1000, "speed_limit_kmh": 60, "capacity": 0},
        ],
        "junctions": [{"id": "J1", "switch_position": "normal", "segment_ids": ["S1", "S2", "S4"]}],
        "stations": [
            {"id": "ST1", "name": "Central", "segment_id": "S2", "platforms": 1},
            {"id": "ST2", "name": "Halt", "segment_id": "S1", "platforms": 2},
        ],
        "routes": [
            {
                "id": "R1",
                "segment_ids": ["S1", "S2"],
                "junction_requirements": {"J1": "normal"},
                "station_dwells": [
                    {"station_id": "ST1", "arrive_at": "2026-03-02T10:05:00Z", "depart_at": "2026-03-02T10:10:00Z"},
                ],
            },
            {
                "id": "R2",
                "segment_ids": ["S3", "S4", "S2"],
                "junction_requirements": {"J1": "reverse"},
                "station_dwells": [
                    {"station_id": "ST1", "arrive_at": "2026-03-02T10:07:00Z", "depart_at": "2026-03-02T10:12:00Z"},
                ],
            },
            {"id": "R3", "segment_ids": ["S5"]},
        ],
    }


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_entity():
    def _make(
        entity_id,
        segment_id="S1",
        offset_m=0.0,
        speed_kmh=0.0,
        direction=Direction.FORWARD,
        route_id=None,
        status=EntityStatus.RUNNING,
        last_update=T0,
        heading_deg=0.0,
        trajectory=(),
    ):
        return EntityState(
            id=entity_id,
            segment_id=segment_id,
            offset_m=offset_m,
            speed_kmh=speed_kmh,
            direction=direction,
            route_id=route_id,
            status=status,
            last_update=last_update,
            heading_deg=heading_deg,
            trajectory=tuple(trajectory),
        )
    return _make


@pytest.fixture
def make_signal():
    def _make(signal_id, aspect, segment_id, affected=(), changed_at=None):
        return SignalState(
            id=signal_id,
            aspect=SignalAspect(aspect) if isinstance(aspect, str) else aspect,
            segment_id=segment_id,
            affected_entity_ids=tuple(affected),
            changed_at=changed_at,
        )
    return _make


@pytest.fixture
def make_snapshot(topology):
    def _make(entities=(), signals=(), snapshot_id=1, taken_at=T0, movements=(), excluded=()):
        return NetworkSnapshot(
            snapshot_id=snapshot_id,
            taken_at=taken_at,
            entities={e.id: e for e in entities},
            signals={s.id: s for s in signals},
            topology=topology,
            scheduled_movements=tuple(movements),
            excluded_entity_ids=tuple(excluded),
        )
    return _make


@pytest.fixture
def trajectory():
    """Trajectory points from (seconds after T0, segment, offset, speed) tuples."""
    def _make(*points):
        return tuple(
            TrajectoryPoint(T0 + timedelta(seconds=s), seg, off, spd)
            for s, seg, off, spd in points
        )
    return _make


# =============================================================================
# Scenarios
# =============================================================================

@pytest.fixture
def head_on_snapshot(make_entity, make_snapshot):
    """
    Two entities 4900m apart on S1, closing at 120km/h.

    Time to collision is 147s, well inside the 300s horizon.
    """
    return make_snapshot([
        make_entity("T-A", "S1", offset_m=100.0, speed_kmh=60.0, direction=Direction.FORWARD),
        make_entity("T-B", "S1", offset_m=5000.0, speed_kmh=60.0, direction=Direction.REVERSE),
    ])


@pytest.fixture
def over_capacity_snapshot(make_entity, make_snapshot):
    """Four stopped entities on S1 (capacity 3), 1000m apart."""
    return make_snapshot([
        make_entity(f"T-{i}", "S1", offset_m=offset)
        for i, offset in enumerate((500.0, 1500.0, 2500.0, 3500.0), start=1)
    ])


@pytest.fixture
def quiet_snapshot(make_entity, make_snapshot):
    """One slow entity alone on the network."""
    return make_snapshot([make_entity("T-Q", "S3", offset_m=100.0, speed_kmh=30.0)])


@pytest.fixture
def config():
    return SentinelConfig()
