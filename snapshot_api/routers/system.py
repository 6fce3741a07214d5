from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from ..config import load_and_sync_schedules
from ..database import get_session
from ..dependencies import get_scheduler, get_settings
from ..scheduler import BackupScheduler
from ..schedules import get_schedule_stats
from ..schemas import CleanupResult, ScheduleStats

router = APIRouter()


@router.get("/schedule-stats", response_model=ScheduleStats)
def schedule_stats(session: Session = Depends(get_session), settings: dict = Depends(get_settings)):
    window = settings.get("scheduler", {}).get("stats_window", 10)
    return get_schedule_stats(session, window)


@router.post("/cleanup", response_model=CleanupResult)
def cleanup_old_backups(scheduler: BackupScheduler = Depends(get_scheduler)):
    """Run the retention sweep now."""
    return CleanupResult(deleted=scheduler.run_cleanup())


@router.post("/reload-schedules", status_code=status.HTTP_204_NO_CONTENT)
def reload_schedules(session: Session = Depends(get_session), settings: dict = Depends(get_settings)):
    """Create schedules declared in the configuration file that are missing."""
    try:
        load_and_sync_schedules(session, settings)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
