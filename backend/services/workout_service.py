from db.schemas import InsertWorkout, WorkoutFields

# Intensity factor relative to threshold effort.
INTENSITY_FACTORS = {
    "easy": 0.65,
    "moderate": 0.78,
    "hard": 0.9,
    "race": 1.0,
}
DEFAULT_INTENSITY = "moderate"


def estimate_tss(duration_minutes: int | float | None, intensity: str | None) -> int | None:
    """Training stress score from duration and perceived intensity.

    TSS = minutes * IF^2 / 60 * 100, so an hour at threshold scores 100.
    """
    if not duration_minutes or duration_minutes <= 0:
        return None
    factor = INTENSITY_FACTORS.get((intensity or DEFAULT_INTENSITY).strip().lower())
    if factor is None:
        factor = INTENSITY_FACTORS[DEFAULT_INTENSITY]
    return int(round(duration_minutes * factor**2 / 60 * 100))


def prepare_workout(fields: WorkoutFields, user_id: str) -> InsertWorkout:
    """Attach the owner and fill ``tss_score`` when the client left it out."""
    payload = fields.model_dump()
    if payload.get("tss_score") is None:
        duration = payload.get("actual_duration") or payload.get("planned_duration")
        payload["tss_score"] = estimate_tss(duration, payload.get("intensity"))
    return InsertWorkout(**payload, user_id=user_id)


def weekly_training_load(workouts) -> dict:
    completed = [w for w in workouts if w.is_completed]
    return {
        "workouts": len(workouts),
        "completed": len(completed),
        "total_tss": sum(int(w.tss_score or 0) for w in completed),
        "total_minutes": sum(int(w.actual_duration or w.planned_duration or 0) for w in completed),
    }
