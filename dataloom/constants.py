"""Engine-wide constants."""

DEFAULT_TURN_LIMIT = 8

# Recurring schedule intervals in seconds.
SCHEDULE_INTERVALS = {
    "every_5_minutes": 300,
    "hourly": 3600,
    "every_2_hours": 7200,
    "every_4_hours": 14400,
    "qtrdaily": 21600,
    "twicedaily": 43200,
    "daily": 86400,
    "weekly": 604800,
}

# Pipeline-level schedules fan out to every inheriting flow.
PIPELINE_SCHEDULE_INTERVALS = {
    name: seconds
    for name, seconds in SCHEDULE_INTERVALS.items()
    if name != "every_5_minutes"
}

MANUAL_INTERVAL = "manual"
INHERIT_INTERVAL = "pipeline"

STUCK_JOB_TIMEOUT_HOURS = 6
JOB_RETENTION_DAYS = 30
MAINTENANCE_WINDOW_HOURS = 24

AI_RESPONSE_TITLE_MAX_LENGTH = 100
