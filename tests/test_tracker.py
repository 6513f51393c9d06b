import unittest

from remote_provisioner.models import ManagedResource, ServerRecord
from remote_provisioner.provisioning.milestones import COMPLETE, MilestoneDefinition, humanize
from remote_provisioner.provisioning.steps import StepResult, remote
from remote_provisioner.provisioning.tracker import MilestoneTracker
from remote_provisioner.store import InMemoryResourceStore

from fakes import RecordingSink

DEFINITION = MilestoneDefinition.of(
    "php.install",
    ("prepare_system", "Preparing system"),
    ("install_php", "Installing PHP packages"),
)


class ExplodingSink:
    def publish(self, server_id, payload):
        raise ConnectionError("sink offline")


class MilestoneDefinitionTests(unittest.TestCase):
    def test_complete_is_appended(self) -> None:
        self.assertEqual(DEFINITION.keys(), ["prepare_system", "install_php", COMPLETE])
        self.assertEqual(DEFINITION.count_labels(), 3)
        self.assertEqual(DEFINITION.position_of("install_php"), 2)

    def test_duplicate_keys_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            MilestoneDefinition.of("x", ("a", "A"), ("a", "Again"))

    def test_unknown_key_gets_humanized_label(self) -> None:
        self.assertEqual(DEFINITION.label_for("clone_or_fetch_repository"), "Clone or fetch repository")
        self.assertEqual(humanize(""), "Unknown milestone")


class MilestoneTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryResourceStore()
        self.sink = RecordingSink()
        self.resource = self.store.add(ManagedResource.new("srv-1", "php", "8.3"))
        self.server = ServerRecord(id="srv-1", host="203.0.113.10", name="web-1")

    def _tracker(self, final_attempt: bool = True, sink=None) -> MilestoneTracker:
        return MilestoneTracker(
            self.store,
            sink or self.sink,
            DEFINITION,
            self.resource,
            self.server,
            final_attempt=final_attempt,
        )

    def test_success_persists_progress_and_audits(self) -> None:
        tracker = self._tracker()
        tracker.on_step(remote("prepare_system", "true"), StepResult(1, "prepare_system", "true", 0))
        loaded = self.store.load(self.resource.id)
        self.assertEqual((loaded.progress.step, loaded.progress.total), (1, 3))
        self.assertEqual(loaded.progress.label, "Preparing system")

        events = self.store.events_for(self.resource.id)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].details["server_ip"], "203.0.113.10")
        server_id, payload = self.sink.payloads[0]
        self.assertEqual(server_id, "srv-1")
        self.assertEqual(payload["current_step"], 1)
        self.assertEqual(payload["total_steps"], 3)

    def test_complete_reaches_last_step(self) -> None:
        tracker = self._tracker()
        tracker.complete()
        loaded = self.store.load(self.resource.id)
        self.assertEqual(loaded.progress.step, loaded.progress.total)
        self.assertEqual(self.store.events_for(self.resource.id)[-1].milestone, COMPLETE)

    def test_failure_before_final_attempt_is_not_audited(self) -> None:
        tracker = self._tracker(final_attempt=False)
        tracker.on_step(remote("install_php", "x"), StepResult(2, "install_php", "x", 100, stderr="E: broken"))
        self.assertEqual(self.store.events_for(self.resource.id), [])
        self.assertEqual(self.store.load(self.resource.id).progress.status, "retrying")

    def test_final_step_failure_updates_progress_only(self) -> None:
        tracker = self._tracker()
        tracker.on_step(remote("install_php", "x"), StepResult(2, "install_php", "x", 100, stderr="E: broken"))
        self.assertEqual(self.store.events_for(self.resource.id), [])
        progress = self.store.load(self.resource.id).progress
        self.assertEqual((progress.step, progress.status), (2, "failed"))
        self.assertEqual(self.sink.payloads[-1][1]["details"]["exit_status"], 100)

    def test_terminal_failure_is_the_single_audit_entry(self) -> None:
        tracker = self._tracker()
        tracker.on_step(remote("install_php", "x"), StepResult(2, "install_php", "x", 100, stderr="E: broken"))
        tracker.terminal_failure("E: broken", {"exit_status": 100})

        events = self.store.events_for(self.resource.id)
        self.assertEqual(len(events), 1)
        self.assertEqual((events[0].current_step, events[0].milestone), (2, "install_php"))
        self.assertEqual(events[0].status, "failed")
        self.assertEqual(events[0].error_log, "E: broken")
        self.assertEqual(events[0].details["exit_status"], 100)

    def test_sink_errors_do_not_propagate(self) -> None:
        tracker = self._tracker(sink=ExplodingSink())
        tracker.complete()
        self.assertEqual(len(self.store.events_for(self.resource.id)), 1)


if __name__ == "__main__":
    unittest.main()
