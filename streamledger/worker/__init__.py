from streamledger.worker.pipeline import (
    QueueNotInitializedError,
    clear_stuck_jobs,
    enqueue_maintenance_job,
    get_heavy_ops_status,
    get_job_history,
    get_job_progress,
    get_job_status,
    get_progress_channel,
    get_queue_stats,
    init_maintenance_queue,
    is_job_type_running,
    list_active_jobs,
    obliterate_queue,
    shutdown_maintenance_queue,
    start_maintenance_worker,
)

__all__ = [
    "QueueNotInitializedError",
    "init_maintenance_queue",
    "enqueue_maintenance_job",
    "get_job_status",
    "get_job_progress",
    "get_queue_stats",
    "get_job_history",
    "list_active_jobs",
    "is_job_type_running",
    "clear_stuck_jobs",
    "obliterate_queue",
    "get_heavy_ops_status",
    "get_progress_channel",
    "start_maintenance_worker",
    "shutdown_maintenance_queue",
]
