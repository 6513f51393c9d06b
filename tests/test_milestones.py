"""Every operation's command sequence lines up with its milestone definition."""

import unittest

from remote_provisioner.models import ManagedResource, ResourceStatus
from remote_provisioner.provisioners import default_registry, milestone_catalog
from remote_provisioner.provisioning.milestones import COMPLETE

SUPERVISOR = {"command": "php artisan queue:work --tries=3", "processes": 2}
SCHEDULER = {"command": "php artisan schedule:run", "frequency": "every_minute"}
DEPLOYMENT = {"domain": "shop.example.com", "repository": "acme/shop", "site_id": "site-1"}
# engine and root_password come from the database record at run time
DATABASE_USER = {"database_id": "db-1", "engine": "mysql", "root_password": "s3cret", "schemas": ["shop", "blog"]}

# operation -> (resource key, configuration, resource fields)
SAMPLES = {
    "php.install": ("8.3", {}, {}),
    "php.remove": ("8.3", {}, {}),
    "php.set_cli_default": ("8.3", {}, {"status": ResourceStatus.INSTALLED}),
    "database.install": ("mysql", {}, {}),
    "database.update": ("mysql", {"root_password": "s3cret"}, {}),
    "database.remove": ("mysql", {"root_password": "s3cret"}, {}),
    "database.user_install": ("shop", DATABASE_USER, {}),
    "database.user_update": ("shop", DATABASE_USER, {}),
    "node.install": ("22", {"install_composer": True}, {}),
    "cache.install": ("redis", {}, {}),
    "cache.remove": ("redis", {}, {}),
    "reverse_proxy.install": ("nginx", {"php_version": "8.3"}, {}),
    "reverse_proxy.remove": ("nginx", {}, {}),
    "firewall.install_rule": ("8080", {"protocol": "tcp", "name": "api"}, {}),
    "firewall.remove_rule": ("8080", {"protocol": "tcp"}, {}),
    "supervisor.install_task": ("queue-worker", SUPERVISOR, {}),
    "supervisor.remove_task": ("queue-worker", SUPERVISOR, {}),
    "scheduler.install_task": ("schedule", SCHEDULER, {}),
    "scheduler.remove_task": ("schedule", SCHEDULER, {}),
    "git.install": ("shop.example.com", {"repository": "acme/shop"}, {}),
    "deployment.run": ("shop.example.com", {**DEPLOYMENT, "script": "composer install\nphp artisan migrate"}, {}),
    "deployment.rollback": ("shop.example.com", {**DEPLOYMENT, "target_release": "20260101120000"}, {}),
    "site.install": ("shop.example.com", {}, {}),
    "site.remove": ("shop.example.com", {}, {}),
    "site.generate_deploy_key": ("shop.example.com", {}, {}),
    "site.set_default": ("shop.example.com", {"php_version": "8.3"}, {}),
    "site.unset_default": ("shop.example.com", {}, {"is_default": True}),
}


def build_steps(operation, key, configuration, fields):
    provisioner = default_registry().get(operation)
    resource = ManagedResource.new("srv-1", provisioner.resource_type, key, configuration)
    for name, value in fields.items():
        setattr(resource, name, value)
    config = dict(configuration)
    if provisioner.prepare is not None:
        config = provisioner.prepare(resource, config)
    return provisioner, provisioner.build(resource, config)


class MilestoneAlignmentTests(unittest.TestCase):
    def test_every_operation_has_a_sample(self) -> None:
        self.assertEqual(set(SAMPLES), set(default_registry().operations()))

    def test_step_count_is_one_less_than_labels(self) -> None:
        for operation, (key, configuration, fields) in SAMPLES.items():
            with self.subTest(operation=operation):
                provisioner, steps = build_steps(operation, key, configuration, fields)
                self.assertEqual(len(steps), provisioner.milestones.count_labels() - 1)

    def test_steps_follow_milestone_order(self) -> None:
        for operation, (key, configuration, fields) in SAMPLES.items():
            with self.subTest(operation=operation):
                provisioner, steps = build_steps(operation, key, configuration, fields)
                self.assertEqual([step.milestone for step in steps], provisioner.milestones.keys()[:-1])

    def test_every_database_engine_lines_up(self) -> None:
        for engine in ("mysql", "mariadb", "postgresql"):
            for operation in ("database.install", "database.update", "database.remove"):
                with self.subTest(engine=engine, operation=operation):
                    provisioner, steps = build_steps(operation, engine, {"root_password": "s3cret"}, {})
                    self.assertEqual([step.milestone for step in steps], provisioner.milestones.keys()[:-1])

    def test_database_users_line_up_for_every_engine(self) -> None:
        for engine in ("mysql", "mariadb", "postgresql"):
            for operation in ("database.user_install", "database.user_update"):
                for schemas in ([], ["shop"]):
                    with self.subTest(engine=engine, operation=operation, schemas=schemas):
                        configuration = {**DATABASE_USER, "engine": engine, "schemas": schemas}
                        provisioner, steps = build_steps(operation, "shop", configuration, {})
                        self.assertEqual([step.milestone for step in steps], provisioner.milestones.keys()[:-1])

    def test_node_install_without_composer_keeps_its_milestones(self) -> None:
        provisioner, steps = build_steps("node.install", "20", {}, {})
        self.assertEqual([step.milestone for step in steps], provisioner.milestones.keys()[:-1])

    def test_catalog_ends_every_operation_with_complete(self) -> None:
        catalog = milestone_catalog()
        self.assertEqual(len(catalog), len(SAMPLES))
        for operation, milestones in catalog.items():
            self.assertEqual(milestones[-1]["key"], COMPLETE, operation)
            self.assertTrue(all(m["label"] for m in milestones), operation)

    def test_php_install_has_seven_labels(self) -> None:
        self.assertEqual(default_registry().get("php.install").milestones.count_labels(), 7)


if __name__ == "__main__":
    unittest.main()
