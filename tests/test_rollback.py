import unittest

from remote_provisioner.config import AppConfig, JobDefaults
from remote_provisioner.models import ResourceStatus
from remote_provisioner.provisioning.errors import RemoteCommandError
from remote_provisioner.provisioning.jobs import JobOutcome, OperationRequest, ProvisioningJob, cancel, mark_queued
from remote_provisioner.provisioning.rollback import SingletonRollbackManager
from remote_provisioner.store import InMemoryResourceStore

from fakes import FakeSession, add_resource, add_server, make_runtime


class DefaultSiteRollbackTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryResourceStore()
        add_server(self.store)
        self.site_a = add_resource(self.store, "site", "a.example.com", status=ResourceStatus.ACTIVE, is_default=True)
        self.site_b = add_resource(self.store, "site", "b.example.com", status=ResourceStatus.ACTIVE)

    def _job(self, runtime, site):
        mark_queued(runtime, runtime.registry.get("site.set_default"), site)
        return ProvisioningJob(runtime, OperationRequest("site.set_default", "srv-1", site.id))

    def _flags(self):
        return self.store.load(self.site_a.id).is_default, self.store.load(self.site_b.id).is_default

    def test_failed_swap_restores_previous_default(self) -> None:
        session = FakeSession(failures={"nginx -t": (1, "nginx: configuration file test failed")})
        runtime = make_runtime(session, store=self.store, config=AppConfig(jobs=JobDefaults(tries=1)))

        outcome = self._job(runtime, self.site_b).run_sync()

        self.assertIs(outcome, JobOutcome.FAILED)
        self.assertEqual(self._flags(), (True, False))
        loaded = self.store.load(self.site_b.id)
        self.assertIs(loaded.default_status, ResourceStatus.FAILED)
        self.assertIs(loaded.status, ResourceStatus.ACTIVE)
        self.assertIsNone(loaded.rollback_snapshot)

    def test_successful_swap_moves_the_flag(self) -> None:
        runtime = make_runtime(FakeSession(), store=self.store)

        outcome = self._job(runtime, self.site_b).run_sync()

        self.assertIs(outcome, JobOutcome.SUCCEEDED)
        self.assertEqual(self._flags(), (False, True))
        loaded = self.store.load(self.site_b.id)
        self.assertIs(loaded.default_status, ResourceStatus.ACTIVE)
        self.assertIsNone(loaded.rollback_snapshot)

    def test_retry_keeps_the_pre_swap_snapshot(self) -> None:
        session = FakeSession(failures={"nginx -t": (1, "nginx: configuration file test failed")})
        runtime = make_runtime(session, store=self.store)
        job = self._job(runtime, self.site_b)

        with self.assertRaises(RemoteCommandError):
            job.handle(1)
        snapshot = self.store.load(self.site_b.id).rollback_snapshot
        self.assertEqual(snapshot, {self.site_a.id: True, self.site_b.id: False})
        self.assertEqual(self._flags(), (False, True))

        with self.assertRaises(RemoteCommandError):
            job.handle(2)
        self.assertEqual(self.store.load(self.site_b.id).rollback_snapshot, snapshot)

        self.assertIs(job.handle(3), JobOutcome.FAILED)
        self.assertEqual(self._flags(), (True, False))

    def test_cancel_restores_flags(self) -> None:
        session = FakeSession(failures={"nginx -t": (1, "failed")})
        runtime = make_runtime(session, store=self.store)
        job = self._job(runtime, self.site_b)
        with self.assertRaises(RemoteCommandError):
            job.handle(1)

        self.assertTrue(cancel(runtime, self.site_b.id))

        self.assertEqual(self._flags(), (True, False))
        self.assertIs(self.store.load(self.site_b.id).default_status, ResourceStatus.FAILED)

    def test_cli_default_php_rolls_back_too(self) -> None:
        php_82 = add_resource(self.store, "php", "8.2", status=ResourceStatus.INSTALLED, is_default=True)
        php_83 = add_resource(self.store, "php", "8.3", status=ResourceStatus.INSTALLED)
        session = FakeSession(failures={"update-alternatives": (2, "no alternatives for php")})
        runtime = make_runtime(session, store=self.store, config=AppConfig(jobs=JobDefaults(tries=1)))
        mark_queued(runtime, runtime.registry.get("php.set_cli_default"), php_83)

        outcome = ProvisioningJob(runtime, OperationRequest("php.set_cli_default", "srv-1", php_83.id)).run_sync()

        self.assertIs(outcome, JobOutcome.FAILED)
        self.assertTrue(self.store.load(php_82.id).is_default)
        self.assertFalse(self.store.load(php_83.id).is_default)


class RollbackManagerTests(unittest.TestCase):
    def test_restore_without_snapshot_is_a_no_op(self) -> None:
        store = InMemoryResourceStore()
        site = add_resource(store, "site", "a.example.com")
        manager = SingletonRollbackManager(store)
        self.assertFalse(manager.restore(site.id))
        self.assertFalse(manager.restore("missing"))

    def test_restore_skips_deleted_siblings(self) -> None:
        store = InMemoryResourceStore()
        a = add_resource(store, "site", "a.example.com", is_default=True)
        b = add_resource(store, "site", "b.example.com")
        manager = SingletonRollbackManager(store)
        manager.capture(b)
        store.delete(a.id)

        self.assertTrue(manager.restore(b.id))
        self.assertFalse(store.load(b.id).is_default)
        self.assertFalse(manager.restore(b.id))


if __name__ == "__main__":
    unittest.main()
