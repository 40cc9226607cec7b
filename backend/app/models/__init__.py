from app.models.scheduler_run import SchedulerRun  # noqa: F401
