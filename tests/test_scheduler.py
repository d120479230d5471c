import unittest
from unittest.mock import Mock, patch

from app.models import Project
from app.models.sync_log import SyncTrigger
from app.scheduler import SyncScheduler
from app.services.errors import SyncLockedError


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.scheduler = SyncScheduler()

    def test_project_with_interval_gets_a_job(self):
        project = Project(id=5, sync_enabled=True, integration_id=1, sync_interval_minutes=15)

        self.scheduler.sync_project_schedule(project)

        job = self.scheduler.scheduler.get_job("sync_project_5")
        self.assertIsNotNone(job)
        self.assertEqual(job.args, (5,))
        self.assertIn("sync_project_5", self.scheduler.jobs)

    def test_disabled_or_unlinked_project_is_unscheduled(self):
        project = Project(id=5, sync_enabled=True, integration_id=1, sync_interval_minutes=15)
        self.scheduler.sync_project_schedule(project)

        project.sync_enabled = False
        self.scheduler.sync_project_schedule(project)

        self.assertIsNone(self.scheduler.scheduler.get_job("sync_project_5"))
        self.assertEqual(self.scheduler.jobs, {})

    def test_missing_interval_means_no_job(self):
        self.scheduler.schedule_project(7, None)

        self.assertIsNone(self.scheduler.scheduler.get_job("sync_project_7"))

    def test_job_runs_a_scheduled_pass_and_closes_session(self):
        db = Mock()
        with patch("app.scheduler.SessionLocal", return_value=db), patch("app.scheduler.SyncService") as service_cls:
            self.scheduler._sync_project_job(3)

        service_cls.return_value.run_project_pass.assert_called_once_with(3, trigger=SyncTrigger.SCHEDULED)
        db.close.assert_called_once()

    def test_locked_project_is_skipped_quietly(self):
        db = Mock()
        with patch("app.scheduler.SessionLocal", return_value=db), patch("app.scheduler.SyncService") as service_cls:
            service_cls.return_value.run_project_pass.side_effect = SyncLockedError("busy")
            self.scheduler._sync_project_job(3)

        db.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
