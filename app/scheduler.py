"""Background scheduler for periodic sync"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.models import Project
from app.models.base import SessionLocal
from app.models.sync_log import SyncTrigger
from app.services.errors import PassFatalError, SyncLockedError
from app.services.sync_service import SyncService

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Scheduler for periodic project passes.

    Only projects with sync enabled and a sync_interval_minutes value get a
    job; everything else is synced by manual or webhook triggers.
    """

    def __init__(self):
        self.scheduler = BackgroundScheduler()
        # Best-effort in-memory index of jobs we created.
        # APScheduler itself is the source of truth (see get_job()).
        self.jobs = {}

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_all_projects()

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_all_projects(self):
        """Schedule sync jobs for all projects with an interval"""
        db = SessionLocal()
        try:
            projects = (
                db.query(Project)
                .filter(
                    Project.sync_enabled == True,  # noqa: E712
                    Project.integration_id != None,  # noqa: E711
                    Project.sync_interval_minutes != None,  # noqa: E711
                )
                .all()
            )
            wanted = {p.id for p in projects}

            # If this is ever re-run, reconcile existing jobs too.
            for job_id in list(self.jobs.keys()):
                project_id = int(job_id.split("sync_project_", 1)[1])
                if project_id not in wanted:
                    self.unschedule_project(project_id)

            for project in projects:
                self.schedule_project(project.id, project.sync_interval_minutes)
        finally:
            db.close()

    def sync_project_schedule(self, project: Project):
        """Reconcile one project's job with its current settings"""
        if project.sync_enabled and project.integration_id and project.sync_interval_minutes:
            self.schedule_project(project.id, project.sync_interval_minutes)
        else:
            self.unschedule_project(project.id)

    def schedule_project(self, project_id: int, interval_minutes: Optional[int]):
        """Schedule sync job for a specific project"""
        if not interval_minutes:
            self.unschedule_project(project_id)
            return
        job_id = f"sync_project_{project_id}"

        existing = self.scheduler.get_job(job_id)
        if existing is not None:
            self.scheduler.remove_job(job_id)

        self.scheduler.add_job(
            func=self._sync_project_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            args=[project_id],
            replace_existing=True,
        )
        self.jobs[job_id] = True
        logger.info(f"Scheduled sync for project {project_id} every {interval_minutes} minutes")

    def unschedule_project(self, project_id: int):
        """Remove sync job for a project"""
        job_id = f"sync_project_{project_id}"
        existing = self.scheduler.get_job(job_id)
        if existing is not None:
            self.scheduler.remove_job(job_id)
            logger.info(f"Unscheduled sync for project {project_id}")
        self.jobs.pop(job_id, None)

    def _sync_project_job(self, project_id: int):
        """Job function to sync a project"""
        db = SessionLocal()
        try:
            logger.info(f"Running scheduled sync for project {project_id}")
            sync_service = SyncService(db)
            result = sync_service.run_project_pass(project_id, trigger=SyncTrigger.SCHEDULED)
            logger.info(f"Scheduled sync completed for project {project_id}: {result.message}")
        except SyncLockedError as e:
            logger.info(f"Scheduled sync skipped for project {project_id}: {e}")
        except (PassFatalError, ValueError) as e:
            logger.error(f"Scheduled sync failed for project {project_id}: {e}")
        except Exception as e:
            logger.exception(f"Scheduled sync crashed for project {project_id}: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
