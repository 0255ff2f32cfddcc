"""
Attendance integrity: heartbeat state machine and session lifecycle.

- models:      records, sessions, heartbeat request/response shapes
- repository:  persistence contract and in-memory arena implementation
- heartbeat:   geofence-driven status transitions with violation debounce
- session:     auto-end, idempotent finalization and statistics
- notifier:    fire-and-forget broadcast after transitions
- client:      device-side heartbeat loop with retries
"""

from .heartbeat import HeartbeatProcessor, transition
from .models import (
    AttendanceRecord,
    AttendanceStatus,
    EndSessionResult,
    HeartbeatRequest,
    HeartbeatResponse,
    LocationLogEntry,
    SessionState,
    SessionStatistics,
    SessionStatus,
)
from .repository import AttendanceRepository, InMemoryRepository
from .session import SessionLifecycleManager, compute_statistics

__all__ = [
    'AttendanceRecord',
    'AttendanceRepository',
    'AttendanceStatus',
    'EndSessionResult',
    'HeartbeatProcessor',
    'HeartbeatRequest',
    'HeartbeatResponse',
    'InMemoryRepository',
    'LocationLogEntry',
    'SessionLifecycleManager',
    'SessionState',
    'SessionStatistics',
    'SessionStatus',
    'compute_statistics',
    'transition',
]
