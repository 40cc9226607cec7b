from app.services.scheduler.adaptive_config import (  # noqa: F401
    AdaptiveConfig,
    RuntimeMetrics,
    analyze_problem_characteristics,
    calculate_adaptive_timeout,
    create_adaptive_config,
)
from app.services.scheduler.config import SchedulerSettings, get_config_preset, merge_config  # noqa: F401
from app.services.scheduler.conflict_index import ConflictIndex  # noqa: F401
from app.services.scheduler.engine import (  # noqa: F401
    SchedulerConfig,
    SchedulerEngine,
    calculate_schedule_metrics,
    generate_schedule,
)
from app.services.scheduler.learning import HistoryStore, InMemoryHistoryStore, RunRecord  # noqa: F401
from app.services.scheduler.parallel import ParallelScheduleResult, parallel_schedule  # noqa: F401
from app.services.scheduler.progress import ProgressChannel, ProgressReporter  # noqa: F401
from app.services.scheduler.time_utils import generate_time_blocks  # noqa: F401
from app.services.scheduler.types import (  # noqa: F401
    AvailabilityCalendar,
    Classroom,
    ClassroomType,
    Course,
    CourseCategory,
    Day,
    DepartmentCohort,
    FailureType,
    HardcodedPlacement,
    ScheduleItem,
    SchedulerResult,
    Session,
    SessionType,
    TimeSettings,
)
