from prometheus_client import Counter, Histogram, Gauge

BACKUPS_TOTAL = Counter(
    "snapshot_backups_total",
    "Total number of backup executions.",
    ["schedule_name", "backup_type", "status"]
)

BACKUP_DURATION_SECONDS = Histogram(
    "snapshot_backup_duration_seconds",
    "Duration of backup executions in seconds.",
    ["schedule_name"]
)

BACKUP_SIZE_BYTES = Gauge(
    "snapshot_backup_size_bytes",
    "Size of the last successful backup in bytes.",
    ["schedule_name"]
)

BACKUP_RECORDS = Gauge(
    "snapshot_backup_records",
    "Number of records in the last successful backup.",
    ["schedule_name"]
)

BACKUP_LAST_STATUS = Gauge(
    "snapshot_backup_last_status",
    "Status of the last backup (1 for success, 0 for failure).",
    ["schedule_name"]
)

BACKUP_LAST_SUCCESS_TIMESTAMP_SECONDS = Gauge(
    "snapshot_backup_last_success_timestamp_seconds",
    "Timestamp of the last successful backup.",
    ["schedule_name"]
)

DOMAIN_READ_FAILURES_TOTAL = Counter(
    "snapshot_domain_read_failures_total",
    "Total number of data domains that could not be read during collection.",
    ["domain"]
)

RETENTION_RUNS_TOTAL = Counter(
    "snapshot_retention_runs_total",
    "Total number of retention sweeps."
)

RETENTION_DELETED_TOTAL = Counter(
    "snapshot_retention_deleted_total",
    "Total number of backups deleted by the retention sweep.",
    ["schedule_name"]
)

POLL_ERRORS_TOTAL = Counter(
    "snapshot_poll_errors_total",
    "Total number of due-schedule polls that failed.",
    ["kind"]
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "snapshot_notification_failures_total",
    "Total number of backup notifications that could not be sent.",
    ["event"]
)
