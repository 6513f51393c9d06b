import threading
import unittest

from remote_provisioner.models import ManagedResource
from remote_provisioner.provisioners import default_registry
from remote_provisioner.provisioning.errors import OperationLocked
from remote_provisioner.provisioning.jobs import OperationRequest, ProvisioningJob, mark_queued
from remote_provisioner.provisioning.locks import LockFactory, RedisLeaseLock
from remote_provisioner.store import InMemoryResourceStore

from fakes import FakeRedis, FakeSession, add_resource, add_server, make_runtime


class BlockingSession(FakeSession):
    """Parks the first command until the test lets it go."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.proceed = threading.Event()

    def run(self, command, *, timeout=None):
        self.started.set()
        self.proceed.wait(timeout=5)
        return super().run(command, timeout=timeout)


class RedisLeaseLockTests(unittest.TestCase):
    def test_second_holder_is_refused(self) -> None:
        client = FakeRedis()
        first = RedisLeaseLock(client, "provision:srv-1:php", 60).acquire()
        with self.assertRaises(OperationLocked):
            RedisLeaseLock(client, "provision:srv-1:php", 60).acquire()
        self.assertTrue(first.release())
        self.assertIsNone(client.get("provision:srv-1:php"))

    def test_release_does_not_delete_someone_elses_lease(self) -> None:
        client = FakeRedis()
        lock = RedisLeaseLock(client, "provision:srv-1:php", 60).acquire()
        # lease expired and was taken over
        client.values["provision:srv-1:php"] = "other-token"
        self.assertFalse(lock.release())
        self.assertEqual(client.get("provision:srv-1:php"), "other-token")
        self.assertFalse(lock.release())

    def test_blocking_acquire_polls_until_deadline(self) -> None:
        client = FakeRedis()
        client.set("k", "held")
        now = [0.0]
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        lock = RedisLeaseLock(client, "k", 60, sleep=sleep, clock=lambda: now[0])
        with self.assertRaises(OperationLocked):
            lock.acquire(blocking_timeout=0.5)
        self.assertGreaterEqual(len(sleeps), 4)

    def test_context_manager_releases(self) -> None:
        client = FakeRedis()
        with LockFactory(client, 30)("k") as lock:
            self.assertTrue(lock.held)
            self.assertIsNotNone(client.get("k"))
        self.assertIsNone(client.get("k"))

    def test_only_one_thread_wins(self) -> None:
        client = FakeRedis()
        barrier = threading.Barrier(8)
        winners = []

        def contend():
            barrier.wait()
            if RedisLeaseLock(client, "provision:srv-1:database", 60).try_acquire():
                winners.append(threading.current_thread().name)

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(winners), 1)


class LockScopeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = default_registry()

    def test_keys(self) -> None:
        php = ManagedResource.new("srv-1", "php", "8.3")
        site = ManagedResource.new("srv-1", "site", "shop.example.com")
        deploy = ManagedResource.new("srv-1", "deployment", "shop", {"site_id": site.id})
        self.assertEqual(self.registry.get("php.install").lock_key(php), "provision:srv-1:php")
        self.assertEqual(self.registry.get("php.set_cli_default").lock_key(php), "provision:srv-1:php")
        self.assertEqual(self.registry.get("site.set_default").lock_key(site), "provision:srv-1:site_default")
        self.assertEqual(self.registry.get("git.install").lock_key(site), f"provision:srv-1:site:{site.id}")
        self.assertEqual(self.registry.get("deployment.run").lock_key(deploy), f"provision:srv-1:site:{site.id}")


class ConcurrentJobTests(unittest.TestCase):
    def test_same_scope_jobs_do_not_overlap(self) -> None:
        store = InMemoryResourceStore()
        add_server(store)
        session = BlockingSession()
        runtime = make_runtime(session, store=store)
        php_83 = add_resource(store, "php", "8.3")
        php_82 = add_resource(store, "php", "8.2")
        install = runtime.registry.get("php.install")
        mark_queued(runtime, install, php_83)
        mark_queued(runtime, install, php_82)

        results = {}
        first = ProvisioningJob(runtime, OperationRequest("php.install", "srv-1", php_83.id))
        worker = threading.Thread(target=lambda: results.setdefault("first", first.handle(1)))
        worker.start()
        self.assertTrue(session.started.wait(timeout=5))

        second = ProvisioningJob(runtime, OperationRequest("php.install", "srv-1", php_82.id))
        try:
            with self.assertRaises(OperationLocked):
                second.handle(1)
        finally:
            session.proceed.set()
            worker.join(timeout=5)

        self.assertEqual(results["first"].value, "succeeded")
        self.assertEqual(store.load(php_82.id).status.value, "pending")
        self.assertTrue(all("php8.2" not in command for command in session.commands))


if __name__ == "__main__":
    unittest.main()
