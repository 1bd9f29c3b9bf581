#!/usr/bin/env python3
"""
Daemon sync loop tests

Runs cycles against an InMemoryRemoteStore with scripted repositories, so no
git process or network is involved.
"""

import json
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from fakes import FakeRepo, make_commit
from tina_session.core.errors import GitError
from tina_session.core.registry import SessionLookup, SessionRegistry
from tina_session.core.schema import (
    OrchestrationStatus, PhaseState, PhaseStatus, SupervisorState
)
from tina_session.core.state_machine import StateStore
from tina_session.daemon.sync_loop import DaemonSync, attribute_phase, plan_filename_pattern
from tina_session.remote.memory_store import InMemoryRemoteStore
from tina_session.utils.clock import ManualClock


class SyncTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.registry = SessionRegistry(self.test_dir / "sessions")
        self.state_store = StateStore()
        self.store = InMemoryRemoteStore()
        self.repos = {}
        self.teams_dir = self.test_dir / "teams"
        self.tasks_dir = self.test_dir / "tasks"
        self.sync = DaemonSync(
            registry=self.registry,
            store=self.store,
            node_name="node-1",
            teams_dir=self.teams_dir,
            tasks_dir=self.tasks_dir,
            state_store=self.state_store,
            repo_factory=self.open_repo,
            clock=ManualClock(),
        )

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def open_repo(self, path):
        repo = self.repos.get(Path(path).name)
        if repo is None:
            raise GitError(f"Not a git repository: {path}")
        return repo

    def add_feature(self, feature, status=OrchestrationStatus.EXECUTING, commits=None):
        worktree = self.test_dir / "repo" / ".worktrees" / feature
        worktree.mkdir(parents=True)
        state = SupervisorState(
            feature=feature,
            design_doc=str(self.test_dir / "design.md"),
            worktree_path=str(worktree),
            branch=f"tina/{feature}",
            total_phases=2,
            status=status,
        )
        state.phases["1"] = PhaseState(status=PhaseStatus.RUNNING,
                                       started_at="2024-01-01T00:00:00+00:00")
        self.state_store.save(state)
        self.registry.register(SessionLookup(feature, str(worktree), str(self.test_dir / "repo")))
        if commits is not None:
            self.repos[feature] = FakeRepo(commits)
        return worktree


class TestDiscovery(SyncTestCase):

    def test_skips_complete_and_missing_state(self):
        self.add_feature("active", commits=[make_commit(1)])
        self.add_feature("done", status=OrchestrationStatus.COMPLETE, commits=[make_commit(2)])
        self.registry.register(SessionLookup("ghost", str(self.test_dir / "nowhere")))

        features = [w.feature for w in self.sync.discover_worktrees()]
        self.assertEqual(features, ["active"])


class TestCommitSync(SyncTestCase):

    def test_first_cycle_upserts_oldest_first(self):
        commits = [make_commit(3), make_commit(2), make_commit(1)]
        self.add_feature("auth", commits=commits)

        report = self.sync.run_cycle()

        self.assertEqual(report.worktrees, 1)
        self.assertEqual(report.orchestrations_upserted, 1)
        self.assertEqual(report.commits_upserted, 3)
        self.assertEqual(list(self.store.commits), [c.sha for c in reversed(commits)])
        self.assertEqual(self.sync.cache.last_commit_sha["auth"], commits[0].sha)

    def test_second_cycle_is_idempotent(self):
        self.add_feature("auth", commits=[make_commit(2), make_commit(1)])
        self.sync.run_cycle()
        writes = self.store.upsert_count

        report = self.sync.run_cycle()

        self.assertEqual(report.upserts, 0)
        self.assertEqual(self.store.upsert_count, writes)

    def test_new_commits_only(self):
        self.add_feature("auth", commits=[make_commit(1)])
        self.sync.run_cycle()
        self.repos["auth"].add(make_commit(2))

        report = self.sync.run_cycle()

        self.assertEqual(report.commits_upserted, 1)
        self.assertEqual(self.repos["auth"].log_calls[-1], make_commit(1).sha)

    def test_same_sha_upserted_once(self):
        shared = [make_commit(2), make_commit(1)]
        self.add_feature("auth", commits=shared)
        self.add_feature("billing", commits=list(shared))

        self.sync.run_cycle()

        self.assertEqual(self.store.calls['upsert_commit'], 2)

    def test_seen_shas_are_bounded(self):
        self.sync.cache.max_seen_shas = 2
        self.add_feature("auth", commits=[make_commit(3), make_commit(2), make_commit(1)])

        self.sync.run_cycle()

        self.assertEqual(self.store.calls['upsert_commit'], 3)
        self.assertEqual(list(self.sync.cache.seen_shas), [make_commit(2).sha, make_commit(3).sha])

    def test_rewritten_history_rescans(self):
        self.add_feature("auth", commits=[make_commit(1)])
        self.sync.run_cycle()
        repo = self.repos["auth"]
        repo.commits = [make_commit(5), make_commit(4)]
        repo.fail_since = make_commit(1).sha

        report = self.sync.run_cycle()

        self.assertEqual(report.commits_upserted, 2)
        self.assertEqual(self.sync.cache.last_commit_sha["auth"], make_commit(5).sha)

    def test_commits_attributed_to_phase(self):
        self.add_feature("auth", commits=[make_commit(1, timestamp="2024-01-01T00:30:00Z")])
        self.sync.run_cycle()
        self.assertEqual(self.store.commits[make_commit(1).sha]['phase_number'], "1")


class TestFailureIsolation(SyncTestCase):

    def test_one_bad_worktree_does_not_stop_others(self):
        self.add_feature("broken")
        self.add_feature("healthy", commits=[make_commit(1)])

        with self.assertLogs('tina_session.daemon.sync_loop', level='ERROR'):
            report = self.sync.run_cycle()

        self.assertEqual(report.failures, ["broken"])
        self.assertEqual(report.commits_upserted, 1)
        self.assertIn(make_commit(1).sha, self.store.commits)


class TestPlanSync(SyncTestCase):

    def test_plans_synced_on_change_only(self):
        worktree = self.add_feature("auth", commits=[make_commit(1)])
        plans = worktree / "docs" / "plans"
        plans.mkdir(parents=True)
        (plans / "2024-01-01-auth-phase-1.md").write_text("# Phase 1\n")
        (plans / "notes.md").write_text("not a plan")
        repo_plans = self.test_dir / "repo" / "docs" / "plans"
        repo_plans.mkdir(parents=True)
        (repo_plans / "2024-01-02-auth-phase-2.md").write_text("# Phase 2\n")

        report = self.sync.run_cycle()
        self.assertEqual(report.plans_upserted, 2)
        phases = sorted(doc['phase_number'] for doc in self.store.plans.values())
        self.assertEqual(phases, ["1", "2"])

        self.assertEqual(self.sync.run_cycle().plans_upserted, 0)

        (plans / "2024-01-01-auth-phase-1.md").write_text("# Phase 1\n\nRevised.\n")
        self.assertEqual(self.sync.run_cycle().plans_upserted, 1)

    def test_plan_filename_pattern(self):
        pattern = plan_filename_pattern("auth")
        self.assertEqual(pattern.match("2024-01-01-auth-phase-1.5.md").group(1), "1.5")
        self.assertIsNone(pattern.match("2024-01-01-auth-v2-phase-1.md"))
        self.assertIsNone(pattern.match("auth-phase-1.md"))


class TestTeamSync(SyncTestCase):

    def write_team(self, name, lead_session, members):
        team_dir = self.teams_dir / name
        team_dir.mkdir(parents=True, exist_ok=True)
        (team_dir / "config.json").write_text(json.dumps({
            "name": name,
            "createdAt": 1704067200000,
            "leadAgentId": "lead@" + name,
            "leadSessionId": lead_session,
            "members": members,
        }))

    def write_task(self, session, task_id, status, subject="Implement login"):
        task_dir = self.tasks_dir / session
        task_dir.mkdir(parents=True, exist_ok=True)
        (task_dir / f"{task_id}.json").write_text(json.dumps({
            "id": task_id, "subject": subject, "status": status, "owner": "worker",
        }))

    def test_team_members_and_tasks(self):
        self.add_feature("auth", commits=[make_commit(1)])
        self.write_team("auth-phase-1", "sess-1", [
            {"agentId": "lead@auth-phase-1", "name": "team-lead", "agentType": "team-lead",
             "model": "opus", "joinedAt": 1704067200000, "cwd": ""},
            {"agentId": "worker@auth-phase-1", "name": "worker", "agentType": "implementer",
             "model": "sonnet", "joinedAt": 1704067260000, "cwd": ""},
        ])
        self.write_task("sess-1", "1", "in_progress")

        report = self.sync.run_cycle()
        self.assertEqual(report.teams_registered, 1)
        self.assertEqual(report.members_upserted, 2)
        self.assertEqual(report.tasks_recorded, 1)
        self.assertEqual(self.store.teams["auth-phase-1"]["phase_number"], "1")

        self.assertEqual(self.sync.run_cycle().upserts, 0)

        self.write_task("sess-1", "1", "completed")
        report = self.sync.run_cycle()
        self.assertEqual(report.tasks_recorded, 1)
        self.assertEqual(self.store.task_events[-1]["status"], "completed")

    def test_team_matched_by_member_cwd(self):
        worktree = self.add_feature("auth", commits=[make_commit(1)])
        self.write_team("adhoc-team", "sess-2", [
            {"agentId": "a@adhoc", "name": "helper", "cwd": str(worktree)},
        ])
        self.assertEqual(self.sync.run_cycle().teams_registered, 1)

    def test_unrelated_team_ignored(self):
        self.add_feature("auth", commits=[make_commit(1)])
        self.write_team("billing-phase-1", "sess-3", [])
        (self.teams_dir / "junk").mkdir()
        (self.teams_dir / "junk" / "config.json").write_text("{")
        self.assertEqual(self.sync.run_cycle().teams_registered, 0)


class TestAttribution(unittest.TestCase):

    def test_latest_started_phase_wins(self):
        state = SupervisorState("auth", "/d", "/w", "b", total_phases=3, current_phase=3)
        state.phases["1"] = PhaseState(started_at="2024-01-01T00:00:00+00:00")
        state.phases["2"] = PhaseState(started_at="2024-01-02T00:00:00+00:00")

        self.assertEqual(attribute_phase(state, "2024-01-01T12:00:00+00:00"), "1")
        self.assertEqual(attribute_phase(state, "2024-01-03T00:00:00+00:00"), "2")
        self.assertEqual(attribute_phase(state, "2023-12-31T00:00:00+00:00"), "3")
        self.assertEqual(attribute_phase(state, "not a date"), "3")


class TestRunLoop(unittest.TestCase):

    def test_heartbeat_each_cycle_and_stop(self):
        test_dir = Path(tempfile.mkdtemp())
        try:
            store = InMemoryRemoteStore()
            clock = ManualClock()
            sync = DaemonSync(SessionRegistry(test_dir), store, "node-1", clock=clock)
            clock.on_sleep.append(lambda now: sync.stop() if now >= 5 else None)

            sync.run(interval_secs=3)

            self.assertEqual(store.heartbeats, ["node-1", "node-1"])
            self.assertFalse(sync.running)
        finally:
            shutil.rmtree(test_dir)


if __name__ == '__main__':
    unittest.main()
