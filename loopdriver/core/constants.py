"""
Constants
Centralised storage for loop statuses, stop reasons and on-disk layout
names.
"""
# Loop run statuses (persisted)
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_STOPPED = "stopped"
TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_FAILED, STATUS_STOPPED})

# LoopResult reasons
REASON_SUCCESS = "success"
REASON_MAX_ITERATIONS = "max_iterations"
REASON_MAX_DURATION = "max_duration"
REASON_NO_PROGRESS = "no_progress"
REASON_STOPPED = "stopped"
REASON_ERROR = "error"

# Project data layout: <project>/.loopdriver/{config.yaml,snapshots/}
DATA_DIR_NAME = ".loopdriver"
CONFIG_FILE_NAME = "config.yaml"
SNAPSHOTS_DIR_NAME = "snapshots"
SNAPSHOT_META_FILE = ".snapshot-meta.json"
