#!/usr/bin/env python3
"""
Replay a recorded session through the fusion engine and, optionally, the
heartbeat state machine. See attendance_tracker.replay for the file format.

    python tools/replay_session.py session_20261018.json.gz \
        --classroom 36.6372 127.4896 30 --gpx replay.gpx
"""

import sys
from pathlib import Path

# Ensure repository root is importable when running as a standalone script
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from attendance_tracker.replay import main  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main())
