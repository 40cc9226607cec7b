from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
import math
import random
from time import perf_counter

from app.services.scheduler.config import CapacitySettings, SchedulerSettings
from app.services.scheduler.optimizer import HillClimbingOptimizer, SwapValidator, teacher_load_stddev
from app.services.scheduler.types import Classroom, Course, ScheduleItem, TimeBlock

logger = logging.getLogger(__name__)

IDEAL_BAND_REWARD = 10.0
WASTE_PENALTY = 15.0
OVERCAPACITY_PENALTY = 50.0
IMBALANCE_FACTOR = 2.0


def calculate_energy(
    schedule: Sequence[ScheduleItem],
    course_map: Mapping[str, Course],
    classroom_map: Mapping[str, Classroom],
    capacity: CapacitySettings | None = None,
) -> float:
    """Lower is better."""
    capacity = capacity or CapacitySettings()
    energy = 0.0
    for item in schedule:
        course = course_map.get(item.course_id)
        classroom = classroom_map.get(item.classroom_id)
        if course is None or classroom is None or classroom.capacity <= 0:
            continue
        ratio = course.adjusted_student_count / classroom.capacity
        if ratio > 1.0:
            energy += OVERCAPACITY_PENALTY
        elif capacity.ideal_min_ratio <= ratio <= capacity.ideal_max_ratio:
            energy -= IDEAL_BAND_REWARD
        elif ratio < capacity.penalty_threshold:
            energy += WASTE_PENALTY
    energy += teacher_load_stddev(schedule, course_map) * IMBALANCE_FACTOR
    return energy


@dataclass
class AnnealingOutcome:
    schedule: list[ScheduleItem]
    initial_energy: float
    final_energy: float
    rounds: int
    accepted_moves: int
    accepted_worse_moves: int
    runtime_ms: int


class SimulatedAnnealingOptimizer:
    def __init__(
        self,
        courses: Sequence[Course],
        classrooms: Sequence[Classroom],
        time_blocks: Sequence[TimeBlock],
        *,
        settings: SchedulerSettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or SchedulerSettings()
        self.course_map = {course.id: course for course in courses}
        self.classroom_map = {classroom.id: classroom for classroom in classrooms}
        self.validator = SwapValidator(self.course_map, self.classroom_map, time_blocks)
        self.random = rng or random.Random()

    def energy(self, schedule: Sequence[ScheduleItem]) -> float:
        return calculate_energy(schedule, self.course_map, self.classroom_map, self.settings.capacity)

    def optimize(self, schedule: Sequence[ScheduleItem]) -> AnnealingOutcome:
        start = perf_counter()
        params = self.settings.annealing
        current = list(schedule)
        current_energy = self.energy(current)
        initial_energy = current_energy
        best = list(current)
        best_energy = current_energy
        temperature = params.initial_temperature
        rounds = 0
        accepted = 0
        accepted_worse = 0

        if self.validator.swappable_indices(current):
            while temperature > params.min_temperature:
                rounds += 1
                for _ in range(params.iterations_per_temperature):
                    pair = self.validator.pick_pair(current, self.random)
                    if pair is None:
                        break
                    first, second = pair
                    swapped = self.validator.swap(current, first, second)
                    if swapped is None:
                        continue
                    candidate = list(current)
                    candidate[first], candidate[second] = swapped
                    candidate_energy = self.energy(candidate)
                    delta = candidate_energy - current_energy

                    if delta <= 0:
                        accept = True
                    else:
                        probability = math.exp(-delta / max(temperature, 1e-9))
                        accept = self.random.random() < probability
                        if accept:
                            accepted_worse += 1

                    if accept:
                        current = candidate
                        current_energy = candidate_energy
                        accepted += 1
                        if current_energy < best_energy:
                            best = list(current)
                            best_energy = current_energy
                temperature *= params.cooling_rate

        runtime_ms = int((perf_counter() - start) * 1000)
        logger.debug(
            "Simulated annealing finished | rounds=%s accepted=%s worse_accepted=%s energy=%.2f->%.2f runtime_ms=%s",
            rounds,
            accepted,
            accepted_worse,
            initial_energy,
            best_energy,
            runtime_ms,
        )
        return AnnealingOutcome(
            schedule=best,
            initial_energy=initial_energy,
            final_energy=best_energy,
            rounds=rounds,
            accepted_moves=accepted,
            accepted_worse_moves=accepted_worse,
            runtime_ms=runtime_ms,
        )


def hybrid_optimization(
    schedule: Sequence[ScheduleItem],
    courses: Sequence[Course],
    classrooms: Sequence[Classroom],
    time_blocks: Sequence[TimeBlock],
    *,
    settings: SchedulerSettings | None = None,
    rng: random.Random | None = None,
) -> AnnealingOutcome:
    """Hill climbing first, then annealing from its result."""
    rng = rng or random.Random()
    climbed = HillClimbingOptimizer(courses, classrooms, time_blocks, settings=settings, rng=rng).optimize(schedule)
    annealer = SimulatedAnnealingOptimizer(courses, classrooms, time_blocks, settings=settings, rng=rng)
    outcome = annealer.optimize(climbed.schedule)
    outcome.initial_energy = annealer.energy(schedule)
    outcome.runtime_ms += climbed.runtime_ms
    return outcome
