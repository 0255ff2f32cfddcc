"""
Replay a recorded device session through the fusion pipeline.

Refeeds recorded GPS and inertial samples with deterministic timing so the
fused trajectory, the environment decisions and (optionally) the attendance
outcome against a classroom geofence can be inspected without a device.

Session file (.json or .json.gz):
    {
      "gps_samples":   [{"timestamp", "latitude", "longitude", "accuracy", "speed"?, "bearing"?}],
      "accel_samples": [{"timestamp", "x", "y", "z"}],
      "gyro_samples":  [{"timestamp", "alpha", "beta"?, "gamma"?}],   # deg/s
      "mag_samples":   [{"timestamp", "x", "y", "z"}],
      "classroom":     {"latitude", "longitude", "radius"}            # optional
    }
"""

from __future__ import annotations

import argparse
import gzip
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import xml.etree.ElementTree as ET

import orjson

from .attendance.heartbeat import HeartbeatProcessor
from .attendance.models import HeartbeatRequest
from .attendance.repository import InMemoryRepository
from .attendance.session import SessionLifecycleManager
from .config import get_preset, load_config
from .errors import InvalidInputError, SensorUnavailableError
from .fusion import FusionEngine
from .geofence import Geofence
from .models import GPSFix, InertialFrame
from .sensors.pipeline import DevicePipeline

logger = logging.getLogger(__name__)

# Gyro/magnetometer samples older than this are not attached to a frame
MAX_SAMPLE_SKEW = 0.5  # seconds
GPX_NAMESPACE = "http://www.topografix.com/GPX/1/1"


@dataclass
class ReplayEvent:
    timestamp: float
    kind: str
    payload: Dict


class ReplayClock:
    """Clock override so session and heartbeat logic use recorded timestamps."""

    def __init__(self) -> None:
        self._value = 0.0

    def set(self, value: float) -> None:
        self._value = value

    def now(self) -> float:
        return self._value


def load_session(path: Path) -> Dict:
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rb") as handle:
        return orjson.loads(handle.read())


def _no_inertial_samples():
    raise SensorUnavailableError("session has no accelerometer samples")


def build_events(data: Dict) -> List[ReplayEvent]:
    events: List[ReplayEvent] = []

    def add_events(samples: Iterable[Dict], kind: str) -> None:
        for sample in samples or []:
            ts = sample.get("timestamp")
            if ts is None:
                ts = sample.get("elapsed")
            if ts is None:
                continue
            events.append(ReplayEvent(float(ts), kind, sample))

    add_events(data.get("accel_samples", []), "accel")
    add_events(data.get("gps_samples", []), "gps")
    add_events(data.get("gyro_samples", []), "gyro")
    add_events(data.get("mag_samples", []), "mag")

    if not events:
        raise InvalidInputError("Session has no samples to replay")

    events.sort(key=lambda ev: ev.timestamp)
    return events


def to_sensor_events(events: List[ReplayEvent]):
    """
    Convert replay events into GPSFix / InertialFrame objects.

    Accelerometer samples drive inertial frames; the latest gyro and
    magnetometer samples are attached when recent enough.
    """
    latest_gyro: Optional[ReplayEvent] = None
    latest_mag: Optional[ReplayEvent] = None

    for event in events:
        p = event.payload
        if event.kind == "gyro":
            latest_gyro = event
        elif event.kind == "mag":
            latest_mag = event
        elif event.kind == "gps":
            yield GPSFix(
                latitude=p.get("latitude"),
                longitude=p.get("longitude"),
                accuracy=p.get("accuracy"),
                timestamp=event.timestamp,
                speed=p.get("speed"),
                bearing=p.get("bearing"),
                provider=p.get("provider", "gps"),
            )
        elif event.kind == "accel":
            rotation = None
            if latest_gyro and event.timestamp - latest_gyro.timestamp <= MAX_SAMPLE_SKEW:
                g = latest_gyro.payload
                rotation = (float(g.get("alpha", g.get("z", 0.0))), float(g.get("beta", 0.0)),
                            float(g.get("gamma", 0.0)))
            magnetometer = None
            if latest_mag and event.timestamp - latest_mag.timestamp <= MAX_SAMPLE_SKEW:
                m = latest_mag.payload
                magnetometer = (float(m.get("x", 0.0)), float(m.get("y", 0.0)), float(m.get("z", 0.0)))
            yield InertialFrame(
                acceleration=(float(p.get("x", 0.0)), float(p.get("y", 0.0)), float(p.get("z", 0.0))),
                timestamp=event.timestamp,
                rotation_rate=rotation,
                magnetometer=magnetometer,
            )


def replay_session(
    data: Dict,
    config=None,
    classroom: Optional[Geofence] = None,
    heartbeat_interval: float = 30.0,
) -> Dict:
    """
    Replay a session and collect tracks plus an outcome summary.

    Args:
        data: Loaded session dict
        config: TrackerConfig (default preset when None)
        classroom: Geofence to check heartbeats against (session file's
            "classroom" entry when None)
        heartbeat_interval: Seconds of replay time between heartbeats

    Returns:
        dict: tracks ('gps', 'fused'), heartbeats, statistics
    """
    config = config or get_preset("default")
    events = build_events(data)
    start = events[0].timestamp

    if classroom is None and data.get("classroom"):
        room = data["classroom"]
        classroom = Geofence(room["latitude"], room["longitude"], room.get("radius", config.heartbeat.default_radius))

    clock = ReplayClock()
    clock.set(start)
    engine = FusionEngine(config)
    engine.start_session()
    if not data.get("accel_samples"):
        engine.initialize_inertial(_no_inertial_samples)
    pipeline = DevicePipeline(engine, config.pipeline, device_id="replay")

    tracks: Dict[str, List[Dict]] = {"gps": [], "fused": []}
    heartbeats: List[Dict] = []

    @pipeline.subscribe
    def record_fused(position):
        tracks["fused"].append({
            "timestamp": position.timestamp - start,
            "lat": position.latitude,
            "lon": position.longitude,
            "uncertainty_m": position.accuracy,
            "mode": position.tracking_mode,
            "gps_weight": position.gps_weight,
        })

    processor = None
    attendance = None
    if classroom is not None:
        repository = InMemoryRepository(log_retention=config.heartbeat.log_retention)
        sessions = SessionLifecycleManager(repository, config.session, clock=clock.now)
        processor = HeartbeatProcessor(repository, sessions, config.heartbeat, clock=clock.now)
        session = sessions.create_session(classroom, session_id="replay", created_at=start)
        attendance = sessions.check_in(session.id, "replay-device", now=start, attendance_id="replay-attendance")

    next_heartbeat = start + heartbeat_interval
    sequence = 0
    for event in to_sensor_events(events):
        clock.set(event.timestamp)
        if isinstance(event, GPSFix) and None not in (event.latitude, event.longitude, event.accuracy):
            tracks["gps"].append({
                "timestamp": event.timestamp - start,
                "lat": event.latitude,
                "lon": event.longitude,
                "uncertainty_m": event.accuracy,
            })
        pipeline.submit(event)
        pipeline.drain()

        position = engine.current_position
        if processor is not None and position is not None and event.timestamp >= next_heartbeat:
            sequence += 1
            response = processor.process(HeartbeatRequest(
                attendance_id=attendance.id,
                session_id="replay",
                latitude=position.latitude,
                longitude=position.longitude,
                accuracy=position.accuracy,
                timestamp=event.timestamp,
                source="fusion",
                attempt=sequence,
                metadata=position.to_metadata(),
            ))
            heartbeats.append({
                "timestamp": event.timestamp - start,
                "lat": position.latitude,
                "lon": position.longitude,
                **response.to_dict(),
            })
            next_heartbeat = event.timestamp + heartbeat_interval

    summary = {
        "tracks": tracks,
        "heartbeats": heartbeats,
        "fusion": engine.get_statistics(),
        "pipeline": pipeline.get_health_status(),
        "environment": engine.environment.get_statistics(now=clock.now()),
        "pdr": engine.tracker.get_statistics(),
        "duration": events[-1].timestamp - start,
    }
    if processor is not None:
        final = processor.repository.get_attendance(attendance.id)
        summary["final_status"] = final.status.value
        summary["heartbeat_statistics"] = processor.get_statistics()
    return summary


def _gpx_time(start_dt: datetime, offset: float) -> str:
    """UTC xsd:dateTime for a replay offset; naive start times are taken as UTC."""
    moment = start_dt + timedelta(seconds=offset)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _heartbeat_kind(heartbeat: Dict) -> str:
    if heartbeat.get("sessionEnded"):
        return "session-ended"
    if heartbeat.get("lowAccuracy"):
        return "low-accuracy"
    return "inside" if heartbeat.get("locationValid") else "outside"


def write_gpx(tracks: Dict[str, List[Dict]], output_path: Path, start_dt: datetime,
              heartbeats: Optional[List[Dict]] = None) -> None:
    """
    Export the replay as GPX 1.1.

    Heartbeats become waypoints typed by their geofence verdict; each track
    point carries its uncertainty and, for the fused track, the tracking mode
    and GPS weight in <extensions>.
    """
    gpx = ET.Element("gpx", {"version": "1.1", "creator": "attendance-replay", "xmlns": GPX_NAMESPACE})
    metadata = ET.SubElement(gpx, "metadata")
    ET.SubElement(metadata, "time").text = _gpx_time(start_dt, 0.0)

    for number, heartbeat in enumerate(heartbeats or [], start=1):
        if heartbeat.get("lat") is None:
            continue
        wpt = ET.SubElement(gpx, "wpt", {"lat": str(heartbeat["lat"]), "lon": str(heartbeat["lon"])})
        ET.SubElement(wpt, "time").text = _gpx_time(start_dt, heartbeat["timestamp"])
        ET.SubElement(wpt, "name").text = f"heartbeat {number}"
        if heartbeat.get("distanceMeters") is not None:
            ET.SubElement(wpt, "desc").text = (
                f"{heartbeat['distanceMeters']:.1f} m of {heartbeat['allowedRadiusMeters']:.0f} m allowed"
            )
        ET.SubElement(wpt, "type").text = _heartbeat_kind(heartbeat)

    for key, name in (("gps", "GPS"), ("fused", "Fused")):
        points = tracks.get(key) or []
        if not points:
            continue
        trk = ET.SubElement(gpx, "trk")
        ET.SubElement(trk, "name").text = name
        segment = ET.SubElement(trk, "trkseg")
        for point in points:
            trkpt = ET.SubElement(segment, "trkpt", {"lat": str(point["lat"]), "lon": str(point["lon"])})
            ET.SubElement(trkpt, "time").text = _gpx_time(start_dt, point["timestamp"])
            extensions = ET.SubElement(trkpt, "extensions")
            ET.SubElement(extensions, "uncertainty").text = f"{point['uncertainty_m']:.2f}"
            if "mode" in point:
                ET.SubElement(extensions, "mode").text = point["mode"]
                ET.SubElement(extensions, "gpsWeight").text = f"{point['gps_weight']:.2f}"

    ET.ElementTree(gpx).write(output_path, encoding="utf-8", xml_declaration=True)


def plot_tracks(tracks: Dict[str, List[Dict]], output_path: Path, classroom: Optional[Geofence] = None) -> None:
    """Save a lat/lon plot of the raw and fused tracks (requires matplotlib)."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(8, 8))
    for name, style in (("gps", "o"), ("fused", "-")):
        points = tracks.get(name, [])
        if points:
            ax.plot([p["lon"] for p in points], [p["lat"] for p in points], style, label=name, markersize=3)
    if classroom is not None:
        ax.plot(classroom.longitude, classroom.latitude, "k*", markersize=12, label="classroom")
    ax.set_xlabel("Longitude")
    ax.set_ylabel("Latitude")
    ax.set_title("Replayed session")
    ax.legend()
    ax.grid(True, alpha=0.3)
    fig.savefig(output_path, dpi=120)
    plt.close(fig)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("session", type=Path, help="Path to session_*.json[.gz] file")
    parser.add_argument("--preset", default="default", help="Configuration preset (default: default)")
    parser.add_argument("--config", type=Path, help="JSON config file (overrides --preset)")
    parser.add_argument("--classroom", nargs=3, type=float, metavar=("LAT", "LON", "RADIUS"),
                        help="Classroom geofence for heartbeat simulation")
    parser.add_argument("--heartbeat-interval", type=float, default=30.0,
                        help="Seconds between simulated heartbeats (default: 30)")
    parser.add_argument("--output", type=Path, help="Summary JSON path (defaults to <session>_replay.json)")
    parser.add_argument("--gpx", type=Path, help="Optional GPX output path")
    parser.add_argument("--plot", type=Path, help="Optional PNG plot path (requires matplotlib)")
    parser.add_argument("--start-time", help="ISO8601 timestamp for GPX metadata (default: current UTC)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(args.config) if args.config else get_preset(args.preset)
    classroom = Geofence(*args.classroom) if args.classroom else None

    data = load_session(args.session)
    summary = replay_session(data, config=config, classroom=classroom,
                             heartbeat_interval=args.heartbeat_interval)

    fusion = summary["fusion"]
    print(f"✓ Replayed {summary['duration']:.0f}s: {fusion['gps_updates']} GPS fixes, "
          f"{fusion['steps']} steps, {fusion['total_recalibrations']} recalibrations")
    if fusion["anomalies"]:
        print(f"⚠ {fusion['anomalies']} GPS/PDR disagreement anomalies")
    if "final_status" in summary:
        print(f"✓ Attendance outcome: {summary['final_status']} after {len(summary['heartbeats'])} heartbeats")

    output = args.output or args.session.with_name(args.session.name.split(".")[0] + "_replay.json")
    output.write_bytes(orjson.dumps(summary, option=orjson.OPT_INDENT_2))
    print(f"✓ Summary saved to {output}")

    if args.gpx:
        start_dt = datetime.fromisoformat(args.start_time) if args.start_time else datetime.now(timezone.utc)
        write_gpx(summary["tracks"], args.gpx, start_dt, summary["heartbeats"])
        print(f"✓ GPX saved to {args.gpx}")
    if args.plot:
        plot_tracks(summary["tracks"], args.plot, classroom)
        print(f"✓ Plot saved to {args.plot}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
