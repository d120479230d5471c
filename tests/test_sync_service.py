import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from sync_fixtures import (
    RecordingNotifier,
    RecordingSleep,
    StubJiraClient,
    make_session,
    seed_project,
)

from app.models import Status, SyncConflict, SyncLog, SyncRecord, Task, UserMapping
from app.models.base import utcnow
from app.models.sync_log import SyncStatus
from app.models.sync_record import SyncOutcome
from app.services.errors import (
    EntitySyncError,
    JiraAuthError,
    JiraRateLimitError,
    JiraTransientError,
    JiraValidationError,
    PassFatalError,
    SyncLockedError,
    SyncLockLostError,
)
from app.services.sync_lock import SyncLockManager
from app.services.sync_service import PassOutcome, SyncOptions, SyncService
from app.services.sync_state import SyncStateStore


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class _SyncServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.integration, self.project = seed_project(self.db)
        self.client = StubJiraClient()
        self.sleep = RecordingSleep()
        self.notifier = RecordingNotifier()
        self.service = SyncService(
            self.db,
            client_factory=lambda domain, email, api_token: self.client,
            notifier=self.notifier,
            sleep=self.sleep,
        )
        self.store = SyncStateStore(self.db)

    def tearDown(self):
        self.db.close()

    def _run(self, reset_failed=False, **options):
        return self.service.run_pass(
            self.integration, self.project, SyncOptions(**options), reset_failed=reset_failed
        )

    def _add_task(self, title, **fields):
        task = Task(project_id=self.project.id, title=title, **fields)
        self.db.add(task)
        self.db.commit()
        return task

    def _status(self, name):
        return self.db.query(Status).filter(Status.project_id == self.project.id, Status.name == name).one()

    def _record_for(self, task):
        return self.store.get(self.integration.id, local_id=task.id)


class SyncServiceScenarioTests(_SyncServiceTestCase):
    def test_new_local_task_is_created_once_and_linked(self):
        task = self._add_task("Write release notes")

        result = self._run()

        self.assertTrue(result.success)
        self.assertEqual(len(self.client.calls_to("create_issue")), 1)
        self.assertEqual(result.tasks_pushed, 1)
        self.assertIsNotNone(task.external_id)
        self.assertEqual(task.integration_type, "jira")
        self.assertEqual(task.external_data["jira_key"], "ENG-1")

        record = self._record_for(task)
        self.assertEqual(record.external_id, task.external_id)
        self.assertEqual(record.external_key, "ENG-1")
        self.assertEqual(record.outcome, SyncOutcome.SUCCESS)

    def test_most_recent_wins_pushes_newer_local_status(self):
        self._run()  # pulls the Jira statuses and their mappings
        todo, in_progress = self._status("To Do"), self._status("In Progress")
        task = self._add_task("Fix login", status_id=todo.id)
        self._run()
        record = self._record_for(task)
        old_local, old_remote = record.local_revision, record.remote_revision
        issue_id = task.external_id
        self.assertEqual(self.client.issues[issue_id].status_id, "1")

        # Local moves to In Progress now; Jira moved to Done back in 2024.
        task.status_id = in_progress.id
        self.db.commit()
        self.client.remote_edit(issue_id, status_id="3")

        result = self._run(resolve_conflicts="mostRecentWins")

        self.assertEqual(result.tasks_pushed, 1)
        self.assertEqual(result.tasks_pulled, 0)
        self.assertEqual(result.conflicts[0]["resolution"], "push")
        self.assertEqual(self.client.issues[issue_id].status_id, "2")
        self.assertEqual(task.status_id, in_progress.id)

        record = self._record_for(task)
        self.assertNotEqual(record.local_revision, old_local)
        self.assertNotEqual(record.remote_revision, old_remote)
        self.assertEqual(record.local_revision, record.remote_revision)
        self.assertEqual(record.outcome, SyncOutcome.SUCCESS)

    def test_rate_limit_mid_pass_suspends_and_finishes_every_entity(self):
        for n in range(1, 101):
            self.db.add(Task(project_id=self.project.id, title=f"Task {n}"))
        self.db.commit()
        self.client.fail(
            "create_issue",
            JiraRateLimitError("Too many requests", retry_after=5),
            when=lambda project_key, fields: fields["title"] == "Task 41",
        )

        result = self._run()

        self.assertTrue(result.success)
        self.assertEqual(result.outcome, "success")
        self.assertEqual(self.sleep.calls, [5])
        self.assertEqual(result.processed, 100)
        self.assertEqual(result.tasks_pushed, 100)
        self.assertEqual(len(self.client.issues), 100)
        self.assertEqual(len(self.client.calls_to("create_issue")), 101)
        self.assertEqual(self.store.summary(self.integration.id, self.project.id)["success"], 100)

    def test_reset_failed_makes_error_records_retry_before_classification(self):
        for n in range(5):
            self._add_task(f"Task {n}")
        self._run()
        records = self.store.list_active(self.integration.id, self.project.id)
        self.assertEqual(len(records), 5)
        for record in records:
            record.outcome = SyncOutcome.ERROR
            record.attempts = 2
            record.last_error = "boom"
        self.db.commit()

        result = self._run(reset_failed=True)

        self.assertEqual(result.reset_records, 5)
        self.assertEqual(result.classified.get("unchanged"), 5)
        for record in self.store.list_active(self.integration.id, self.project.id):
            self.assertEqual(record.outcome, SyncOutcome.SUCCESS)
            self.assertEqual(record.attempts, 0)
            self.assertIsNone(record.last_error)


class SyncServicePropertyTests(_SyncServiceTestCase):
    def test_second_pull_only_pass_writes_nothing(self):
        for title in ("Alpha", "Beta", "Gamma"):
            self.client.add_issue(title, description="Body\n\nof the issue")

        first = self._run(push_to_jira=False)
        self.assertEqual(first.tasks_pulled, 3)

        tasks_before = [(t.id, t.updated_at, t.title) for t in self.db.query(Task).order_by(Task.id)]
        records_before = [
            (r.id, r.last_attempt_at, r.local_revision, r.remote_revision)
            for r in self.db.query(SyncRecord).order_by(SyncRecord.id)
        ]

        second = self._run(push_to_jira=False)

        self.assertEqual(second.tasks_pulled, 0)
        self.assertEqual(second.classified, {"unchanged": 3})
        self.assertEqual([(t.id, t.updated_at, t.title) for t in self.db.query(Task).order_by(Task.id)], tasks_before)
        self.assertEqual(
            [
                (r.id, r.last_attempt_at, r.local_revision, r.remote_revision)
                for r in self.db.query(SyncRecord).order_by(SyncRecord.id)
            ],
            records_before,
        )
        # The second pass only asked for recent changes.
        self.assertIsNone(self.client.calls_to("list_issues")[0][1])
        self.assertIsNotNone(self.client.calls_to("list_issues")[1][1])

    def test_pulled_change_is_not_pushed_back_in_the_same_pass(self):
        issue = self.client.add_issue("Original")
        self._run()
        task = self.db.query(Task).one()

        self.client.remote_edit(issue.id, title="Renamed in Jira")
        result = self._run()

        self.assertEqual(result.tasks_pulled, 1)
        self.assertEqual(result.tasks_pushed, 0)
        self.assertEqual(task.title, "Renamed in Jira")
        self.assertEqual(self.client.calls_to("update_issue"), [])
        self.assertEqual(self.client.calls_to("create_issue"), [])

    def test_remote_wins_conflict_is_pulled_without_a_push(self):
        issue = self.client.add_issue("Original")
        self._run()
        task = self.db.query(Task).one()

        task.title = "Local title"
        self.db.commit()
        self.client.remote_edit(issue.id, title="Remote title")

        result = self._run(resolve_conflicts="remote_wins")

        self.assertEqual(result.tasks_pulled, 1)
        self.assertEqual(task.title, "Remote title")
        self.assertEqual(self.client.calls_to("update_issue"), [])

    def test_failing_entity_does_not_stop_its_neighbours(self):
        a = self._add_task("A")
        b = self._add_task("B")
        c = self._add_task("C")
        self.client.fail(
            "create_issue",
            JiraValidationError("Summary is invalid", 400),
            when=lambda project_key, fields: fields["title"] == "B",
        )

        result = self._run()

        self.assertTrue(result.success)
        self.assertIs(result.outcome, PassOutcome.PARTIAL)
        self.assertEqual(result.to_response()["data"]["outcome"], "partial")
        self.assertEqual(result.tasks_pushed, 2)
        self.assertEqual(result.processed, 3)
        self.assertEqual([e["taskId"] for e in result.errors], [b.id])
        self.assertEqual(self._record_for(a).outcome, SyncOutcome.SUCCESS)
        self.assertEqual(self._record_for(c).outcome, SyncOutcome.SUCCESS)
        self.assertIsNone(b.external_id)
        self.assertEqual(
            self.db.query(SyncLog).filter(SyncLog.task_id == b.id, SyncLog.status == SyncStatus.FAILED).count(),
            1,
        )

        # The failed create is on the ledger even though B has no Jira issue yet.
        failed = self._record_for(b)
        failed_id = failed.id
        self.assertEqual(failed.outcome, SyncOutcome.ERROR)
        self.assertEqual(failed.attempts, 1)
        self.assertIsNone(failed.external_id)
        self.assertIn("Summary is invalid", failed.last_error)
        counts = self.service.get_status(self.integration, self.project)["counts"]
        self.assertEqual(counts["error"], 1)
        self.assertEqual(counts["success"], 2)

        # The failure was one-off; the next pass picks B up again.
        retry = self._run()
        self.assertEqual(retry.tasks_pushed, 1)
        self.assertIsNotNone(b.external_id)
        linked = self._record_for(b)
        self.assertEqual(linked.id, failed_id)
        self.assertEqual(linked.external_id, b.external_id)
        self.assertEqual(linked.outcome, SyncOutcome.SUCCESS)
        self.assertEqual(self.db.query(SyncRecord).count(), 3)

    def test_failed_import_is_recorded_and_retried(self):
        issue = self.client.add_issue("Remote only")

        with patch.object(self.service, "_pull_create", side_effect=EntitySyncError("Could not import")):
            result = self._run()

        self.assertEqual(result.outcome, "partial")
        self.assertEqual(self.db.query(Task).count(), 0)
        failed = self.store.get(self.integration.id, external_id=issue.id)
        failed_id = failed.id
        self.assertIsNone(failed.local_id)
        self.assertEqual(failed.external_key, issue.key)
        self.assertEqual(failed.outcome, SyncOutcome.ERROR)
        self.assertEqual(failed.attempts, 1)
        self.assertIsNone(self.project.remote_sync_cursor)
        self.assertEqual(self.service.get_status(self.integration, self.project)["counts"]["error"], 1)

        retry = self._run()

        self.assertEqual(retry.classified.get("new_remote"), 1)
        self.assertEqual(retry.tasks_pulled, 1)
        task = self.db.query(Task).one()
        linked = self.store.get(self.integration.id, external_id=issue.id)
        self.assertEqual(linked.id, failed_id)
        self.assertEqual(linked.local_id, task.id)
        self.assertEqual(linked.outcome, SyncOutcome.SUCCESS)
        self.assertEqual(self.db.query(SyncRecord).count(), 1)

    def test_failed_import_is_not_deleted_from_jira(self):
        issue = self.client.add_issue("Remote only")
        with patch.object(self.service, "_pull_create", side_effect=EntitySyncError("Could not import")):
            self._run()

        result = self._run(push_to_jira=True, pull_from_jira=False, propagate_deletes=True)

        self.assertEqual(self.client.calls_to("delete_issue"), [])
        self.assertIn(issue.id, self.client.issues)
        self.assertEqual(result.classified.get("local_deleted"), None)
        self.assertEqual(result.classified.get("new_remote"), 1)

    def test_push_then_pull_leaves_the_task_alone(self):
        task = self._add_task("Round trip", description="Some text", priority="high")
        self._run()
        self.assertEqual(len(self.client.issues), 1)
        before = (task.title, task.description, task.status_id, task.priority, task.assignee_id, task.updated_at)

        result = self._run(push_to_jira=False)

        self.assertEqual(result.tasks_pulled, 0)
        self.assertEqual(result.classified, {"unchanged": 1})
        self.assertEqual(
            (task.title, task.description, task.status_id, task.priority, task.assignee_id, task.updated_at), before
        )
        self.assertEqual(len(self.client.calls_to("create_issue")), 1)
        self.assertEqual(self.db.query(SyncRecord).count(), 1)


class SyncServiceBehaviorTests(_SyncServiceTestCase):
    def test_manual_conflict_waits_for_a_decision_then_applies_it(self):
        issue = self.client.add_issue("Original")
        self._run()
        task = self.db.query(Task).one()
        task.title = "Local edit"
        self.db.commit()
        self.client.remote_edit(issue.id, title="Remote edit")

        result = self._run()

        self.assertEqual(len(result.conflicts), 1)
        self.assertEqual(result.conflicts[0]["fields"], ["title"])
        self.assertEqual(result.conflicts[0]["resolution"], "manual")
        self.assertEqual(task.title, "Local edit")
        self.assertEqual(self.client.calls_to("update_issue"), [])
        self.assertEqual(self._record_for(task).outcome, SyncOutcome.CONFLICT)
        conflict = self.db.query(SyncConflict).one()
        self.assertFalse(conflict.resolved)

        # A second pass refreshes the same conflict instead of adding one.
        self._run()
        self.assertEqual(self.db.query(SyncConflict).count(), 1)

        conflict.resolved = True
        conflict.resolution = "remote"
        conflict.resolved_at = utcnow()
        self.db.commit()

        applied = self._run()

        self.assertEqual(applied.tasks_pulled, 1)
        self.assertEqual(task.title, "Remote edit")
        self.assertIsNotNone(conflict.applied_at)
        self.assertEqual(self._record_for(task).outcome, SyncOutcome.SUCCESS)

        settled = self._run()
        self.assertEqual(settled.classified, {"unchanged": 1})
        self.assertEqual(settled.conflicts, [])

    def test_decision_left_over_after_the_sides_agree_is_not_replayed(self):
        issue = self.client.add_issue("Original")
        self._run()
        task = self.db.query(Task).one()
        task.title = "Local edit"
        self.db.commit()
        self.client.remote_edit(issue.id, title="Remote edit")
        self._run()
        conflict = self.db.query(SyncConflict).one()
        conflict.resolved = True
        conflict.resolution = "local"
        conflict.resolved_at = utcnow()
        self.db.commit()

        # Jira is reverted before the decision is applied, so there is nothing to resolve.
        self.client.remote_edit(issue.id, title="Original")
        result = self._run()

        self.assertEqual(result.conflicts, [])
        self.assertEqual(result.tasks_pushed, 1)
        self.assertIsNotNone(conflict.applied_at)
        self.assertIsNone(self.store.pending_decision(self.integration.id, conflict.entity_key))

        # A later, unrelated conflict waits for its own decision.
        task.title = "Second local edit"
        self.db.commit()
        self.client.remote_edit(issue.id, title="Second remote edit")
        updates_before = len(self.client.calls_to("update_issue"))

        later = self._run()

        self.assertEqual(len(later.conflicts), 1)
        self.assertEqual(later.conflicts[0]["resolution"], "manual")
        self.assertEqual(len(self.client.calls_to("update_issue")), updates_before)
        self.assertEqual(self.client.issues[issue.id].title, "Second remote edit")
        self.assertEqual(self._record_for(task).outcome, SyncOutcome.CONFLICT)
        self.assertEqual(self.db.query(SyncConflict).count(), 2)

    def test_open_conflict_is_superseded_once_both_sides_agree(self):
        issue = self.client.add_issue("Original")
        self._run()
        task = self.db.query(Task).one()
        task.title = "Same edit"
        self.db.commit()
        self.client.remote_edit(issue.id, title="Different edit")
        self._run()
        conflict = self.db.query(SyncConflict).one()
        self.assertFalse(conflict.resolved)

        self.client.remote_edit(issue.id, title="Same edit")
        result = self._run()

        self.assertEqual(result.conflicts, [])
        self.assertTrue(conflict.resolved)
        self.assertEqual(conflict.resolution, "superseded")
        self.assertIsNotNone(conflict.applied_at)
        self.assertEqual(self._record_for(task).outcome, SyncOutcome.SUCCESS)
        self.assertEqual(self.service.get_status(self.integration, self.project)["conflicts"], [])

    def test_reset_failed_is_kept_when_preflight_fails(self):
        task = self._add_task("Flaky")
        self._run()
        record = self._record_for(task)
        record.outcome = SyncOutcome.ERROR
        record.attempts = 2
        record.last_error = "boom"
        self.db.commit()
        self.client.fail("get_current_user", JiraAuthError("Unauthorized", 401))

        with self.assertRaises(PassFatalError):
            self._run(reset_failed=True)

        record = self._record_for(task)
        self.assertEqual(record.outcome, SyncOutcome.ERROR)
        self.assertEqual(record.attempts, 2)
        self.assertEqual(record.last_error, "boom")

    def test_snapshot_failure_writes_nothing(self):
        task = self._add_task("Flaky")
        self.store.record_entity_error(
            "boom", integration_id=self.integration.id, project_id=self.project.id, local_id=task.id
        )
        self.db.commit()
        self.client.fail("list_issues", JiraTransientError("Service unavailable", 503))

        with self.assertRaises(PassFatalError):
            self._run(reset_failed=True)

        self.assertEqual(self.db.query(Status).count(), 0)
        record = self._record_for(task)
        self.assertEqual(record.outcome, SyncOutcome.ERROR)
        self.assertEqual(record.attempts, 1)
        self.assertEqual(self.client.calls_to("create_issue"), [])
        self.assertIsNone(self.project.last_synced_at)

    def _service_with_clock(self, clock):
        return SyncService(
            self.db,
            client_factory=lambda domain, email, api_token: self.client,
            notifier=self.notifier,
            sleep=self.sleep,
            clock=clock,
            lock_manager=SyncLockManager(self.db, ttl_seconds=900, clock=clock),
        )

    def test_long_pass_renews_its_lock(self):
        clock = _Clock(datetime(2024, 6, 1, 9, 0))
        service = self._service_with_clock(clock)
        other = SyncLockManager(self.db, ttl_seconds=900, clock=clock)
        for title in ("A", "B", "C"):
            self._add_task(title)
        blocked = []
        create_issue = self.client.create_issue

        def slow_create(project_key, fields):
            clock.now += timedelta(seconds=400)
            try:
                other.acquire(self.integration.id, self.project.id)
            except SyncLockedError:
                blocked.append(fields["title"])
            return create_issue(project_key, fields)

        self.client.create_issue = slow_create
        result = service.run_pass(self.integration, self.project, SyncOptions())

        self.assertEqual(result.tasks_pushed, 3)
        self.assertEqual(blocked, ["A", "B", "C"])
        self.assertFalse(other.is_locked(self.integration.id, self.project.id))

    def test_pass_stops_when_its_lock_is_taken_over(self):
        clock = _Clock(datetime(2024, 6, 1, 9, 0))
        service = self._service_with_clock(clock)
        other = SyncLockManager(self.db, ttl_seconds=900, clock=clock)
        for title in ("A", "B", "C"):
            self._add_task(title)
        create_issue = self.client.create_issue

        def stalled_create(project_key, fields):
            # The pass stalls past its TTL and another worker takes the lock.
            clock.now += timedelta(seconds=901)
            other.acquire(self.integration.id, self.project.id)
            return create_issue(project_key, fields)

        self.client.create_issue = stalled_create

        with self.assertRaises(SyncLockLostError):
            service.run_pass(self.integration, self.project, SyncOptions())

        self.assertEqual(len(self.client.calls_to("create_issue")), 1)
        self.assertTrue(other.is_locked(self.integration.id, self.project.id))
        self.assertIsNone(self.project.last_synced_at)
        self.assertEqual(
            self.db.query(SyncLog)
            .filter(SyncLog.task_id == None, SyncLog.status == SyncStatus.FAILED)  # noqa: E711
            .count(),
            1,
        )

    def test_auth_failures_deactivate_the_integration_after_threshold(self):
        self.client.fail("get_current_user", JiraAuthError("Unauthorized", 401), times=None)

        for _ in range(3):
            with self.assertRaises(PassFatalError):
                self._run()

        self.assertFalse(self.integration.is_active)
        self.assertEqual(self.integration.consecutive_auth_failures, 3)
        self.assertIsNotNone(self.integration.deactivated_at)
        self.assertEqual(len(self.notifier.deactivated), 1)
        self.assertEqual(
            self.db.query(SyncLog).filter(SyncLog.status == SyncStatus.FAILED).count(),
            3,
        )

        with self.assertRaises(PassFatalError):
            self._run()
        self.assertEqual(len(self.client.calls_to("get_current_user")), 3)

    def test_successful_preflight_resets_auth_failure_count(self):
        self.client.fail("get_current_user", JiraAuthError("Unauthorized", 401), times=2)
        for _ in range(2):
            with self.assertRaises(PassFatalError):
                self._run()
        self.assertEqual(self.integration.consecutive_auth_failures, 2)

        self._run()

        self.assertEqual(self.integration.consecutive_auth_failures, 0)
        self.assertTrue(self.integration.is_active)
        self.assertEqual(self.notifier.deactivated, [])

    def test_pass_refuses_to_start_while_locked(self):
        SyncLockManager(self.db).acquire(self.integration.id, self.project.id)

        with self.assertRaises(SyncLockedError):
            self._run()
        self.assertEqual(self.client.calls, [])

    def test_lock_is_released_after_pass(self):
        self._run()
        self.assertFalse(self.service.locks.is_locked(self.integration.id, self.project.id))

    def test_rate_limit_ceiling_stops_pass_and_keeps_watermarks(self):
        for n in range(1, 6):
            self._add_task(f"Task {n}")
        self.client.fail(
            "create_issue",
            JiraRateLimitError("Too many requests", retry_after=400),
            when=lambda project_key, fields: fields["title"] == "Task 3",
        )

        result = self._run()

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertEqual(result.outcome, "rate_limited")
        self.assertEqual(result.processed, 2)
        self.assertEqual(result.tasks_pushed, 2)
        self.assertEqual(self.sleep.calls, [])
        self.assertIsNone(self.project.last_synced_at)
        self.assertIsNone(self.project.remote_sync_cursor)
        self.assertEqual(
            self.db.query(SyncLog).filter(SyncLog.status == SyncStatus.RATE_LIMITED).count(),
            1,
        )
        self.assertFalse(self.service.locks.is_locked(self.integration.id, self.project.id))

    def test_default_backoff_accumulates_up_to_the_ceiling(self):
        self.client.fail("list_issues", JiraRateLimitError("Too many requests"), times=None)

        result = self._run()

        self.assertEqual(result.outcome, "rate_limited")
        self.assertEqual(self.sleep.calls, [10.0] * 30)
        self.assertEqual(result.processed, 0)

    def test_dry_run_classifies_without_writing(self):
        self._add_task("Local only")
        self.client.add_issue("Remote only")

        result = self._run(push_to_jira=False, pull_from_jira=False)

        self.assertEqual(result.outcome, "dry_run")
        self.assertEqual(result.classified, {"new_remote": 1, "new_local": 1})
        self.assertEqual(result.skipped, 2)
        self.assertEqual(self.client.calls_to("create_issue"), [])
        self.assertEqual(self.db.query(Task).count(), 1)
        self.assertEqual(self.db.query(Status).count(), 0)
        self.assertIsNone(self.project.last_synced_at)
        self.assertIsNone(self.project.remote_sync_cursor)

    def test_pull_only_pass_keeps_local_watermark(self):
        self.client.add_issue("Remote")

        self._run(push_to_jira=False)

        self.assertIsNone(self.project.last_synced_at)
        self.assertIsNotNone(self.project.remote_sync_cursor)

    def test_pulled_issue_maps_status_priority_and_assignee(self):
        self.db.add(UserMapping(integration_id=self.integration.id, local_user_id="u-1", jira_account_id="acc-1"))
        self.db.commit()
        self.client.add_issue(
            "Ship it",
            status_id="3",
            priority="Highest",
            assignee_account_id="acc-1",
            assignee_name="Dana",
        )

        self._run()

        task = self.db.query(Task).one()
        self.assertEqual(task.status_id, self._status("Done").id)
        self.assertEqual(task.priority, "critical")
        self.assertEqual(task.assignee_id, "u-1")
        self.assertEqual(task.external_data["jira_priority"], "Highest")

    def test_push_omits_assignee_without_user_mapping(self):
        self._add_task("Unmapped assignee", assignee_id="u-404")

        self._run()

        fields = self.client.calls_to("create_issue")[0][1]
        self.assertNotIn("assignee_account_id", fields)

    def test_status_sync_reuses_same_named_local_status(self):
        self.db.add(Status(project_id=self.project.id, name="Done", color="green", position=0))
        self.db.add(Status(project_id=self.project.id, name="Blocked", color="red", position=1))
        self.db.commit()

        result = self._run()

        self.assertEqual(result.statuses_pulled, 3)
        self.assertEqual(result.statuses_pushed, 0)
        self.assertEqual(self.db.query(Status).filter(Status.name == "Done").count(), 1)
        self.assertEqual(self.db.query(Status).count(), 4)

    def test_push_only_status_sync_links_by_name(self):
        self.db.add(Status(project_id=self.project.id, name="In Progress", color="yellow", position=0))
        self.db.add(Status(project_id=self.project.id, name="Waiting", color="gray", position=1))
        self.db.commit()

        result = self._run(pull_from_jira=False)

        self.assertEqual(result.statuses_pushed, 1)
        self.assertEqual(result.statuses_pulled, 0)
        self.assertEqual(self.db.query(Status).count(), 2)

    def test_issue_missing_in_jira_unlinks_the_task(self):
        task = self._add_task("Soon orphaned")
        self._run()
        issue_id = task.external_id
        del self.client.issues[issue_id]
        task.description = "touched"
        self.db.commit()

        result = self._run()

        self.assertEqual(result.skipped, 1)
        self.assertIsNone(task.external_id)
        self.assertTrue(task.external_data["jira_deleted"])
        self.assertTrue(task.external_data["sync_excluded"])
        stale = self.db.query(SyncRecord).filter(SyncRecord.external_id == issue_id).one()
        self.assertTrue(stale.stale)
        self.assertEqual(stale.stale_reason, "remote_deleted")

        self._run()
        self.assertEqual(len(self.client.calls_to("create_issue")), 1)

    def test_deleted_local_task_only_drops_link_by_default(self):
        task = self._add_task("Short lived")
        self._run()
        issue_id = task.external_id
        self.db.delete(task)
        self.db.commit()

        result = self._run()

        self.assertEqual(result.classified.get("local_deleted"), 1)
        self.assertEqual(self.client.calls_to("delete_issue"), [])
        self.assertIn(issue_id, self.client.issues)
        record = self.db.query(SyncRecord).filter(SyncRecord.external_id == issue_id).one()
        self.assertEqual(record.stale_reason, "local_missing")

    def test_propagate_deletes_removes_the_jira_issue(self):
        task = self._add_task("Short lived")
        self._run()
        issue_id = task.external_id
        self.db.delete(task)
        self.db.commit()

        result = self._run(propagate_deletes=True)

        self.assertEqual(result.tasks_deleted, 1)
        self.assertEqual(self.client.calls_to("delete_issue"), [(issue_id,)])
        record = self.db.query(SyncRecord).filter(SyncRecord.external_id == issue_id).one()
        self.assertEqual(record.stale_reason, "local_deleted")

    def test_get_status_reports_counts_and_open_conflicts(self):
        issue = self.client.add_issue("Original")
        self._run()
        task = self.db.query(Task).one()
        task.title = "Local edit"
        self.db.commit()
        self.client.remote_edit(issue.id, title="Remote edit")
        self._run()

        status = self.service.get_status(self.integration, self.project)

        self.assertEqual(status["jiraProjectKey"], "ENG")
        self.assertTrue(status["integrationActive"])
        self.assertFalse(status["running"])
        self.assertEqual(status["counts"]["conflict"], 1)
        self.assertEqual(status["lastPass"]["status"], "success")
        self.assertEqual(len(status["conflicts"]), 1)
        self.assertEqual(status["conflicts"][0]["fields"], ["title"])

    def test_sync_options_accept_camel_case_payload(self):
        options = SyncOptions.from_payload({"pushToJira": False, "resolveConflicts": "localWins", "syncStatuses": False})

        self.assertFalse(options.push_to_jira)
        self.assertTrue(options.pull_from_jira)
        self.assertEqual(options.to_dict()["resolveConflicts"], "local_wins")
        self.assertFalse(options.sync_statuses)
        with self.assertRaises(ValueError):
            SyncOptions.from_payload({"resolveConflicts": "coin_flip"})

    def test_test_connection_reports_bad_credentials(self):
        self.client.fail("get_current_user", JiraAuthError("Unauthorized", 401))

        outcome = self.service.test_connection("acme.atlassian.net", "bot@acme.test", "wrong")

        self.assertEqual(outcome, {"success": False, "message": "Invalid Jira credentials"})


if __name__ == "__main__":
    unittest.main()
