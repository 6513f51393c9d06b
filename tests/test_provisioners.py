import unittest

from remote_provisioner.models import ManagedResource, ResourceStatus
from remote_provisioner.provisioners import (
    database,
    database_users,
    deployment,
    firewall,
    git,
    nginx,
    node,
    php,
    scheduler,
    sites,
    supervisor,
)
from remote_provisioner.provisioning.errors import ValidationError
from remote_provisioner.provisioning.steps import REDACTED


def resource(resource_type: str, key: str, **fields) -> ManagedResource:
    item = ManagedResource.new("srv-1", resource_type, key)
    for name, value in fields.items():
        setattr(item, name, value)
    return item


def commands(steps):
    return [step.command for step in steps if step.is_remote]


class GitRepositoryTests(unittest.TestCase):
    def test_owner_repo_shorthand_becomes_github_ssh_url(self) -> None:
        self.assertEqual(git.normalize_repository("acme/shop"), "git@github.com:acme/shop.git")

    def test_urls_pass_through(self) -> None:
        for url in ("git@gitlab.com:acme/shop.git", "ssh://git@example.com/acme/shop.git", "https://github.com/acme/shop.git"):
            self.assertEqual(git.normalize_repository(url), url)

    def test_invalid_repository_is_rejected(self) -> None:
        for value in ("", None, "just-a-name", "ftp://example.com/repo"):
            with self.assertRaises(ValidationError):
                git.normalize_repository(value)

    def test_branch_defaults_to_main_and_is_validated(self) -> None:
        self.assertEqual(git.normalize_branch(None), "main")
        self.assertEqual(git.normalize_branch("release/2.x"), "release/2.x")
        with self.assertRaises(ValidationError):
            git.normalize_branch("main; rm -rf /")

    def test_install_clones_into_document_root(self) -> None:
        site = resource("site", "shop.example.com")
        steps = git.build_install(site, {"repository": "acme/shop", "branch": "develop"})
        clone = commands(steps)[1]
        self.assertIn("git@github.com:acme/shop.git", clone)
        self.assertIn("/var/www/shop.example.com/public", clone)
        self.assertIn("git fetch --all --prune", clone)
        self.assertTrue(commands(steps)[0].startswith("mkdir -p "))
        self.assertFalse(steps[-1].is_remote)

    def test_config_drops_empty_values(self) -> None:
        config = git.parse_git_config(resource("site", "shop.example.com"), {"repository": "acme/shop"})
        data = config.to_dict()
        self.assertEqual(data["repository_url"], "git@github.com:acme/shop.git")
        self.assertEqual(data["branch"], "main")
        self.assertNotIn("deploy_key", data)


class PhpTests(unittest.TestCase):
    def test_install_uses_requested_version(self) -> None:
        steps = php.build_install(resource("php", "8.3"), {})
        joined = "\n".join(commands(steps))
        self.assertIn("php8.3-fpm", joined)
        self.assertIn("systemctl enable php8.3-fpm", joined)
        self.assertNotIn("php8.2", joined)

    def test_unsupported_version_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            php.build_install(resource("php", "7.4"), {})

    def test_cli_default_cannot_be_removed(self) -> None:
        with self.assertRaises(ValidationError):
            php.build_remove(resource("php", "8.3", is_default=True), {})

    def test_set_cli_default_requires_installed(self) -> None:
        with self.assertRaises(ValidationError):
            php.build_set_cli_default(resource("php", "8.3"), {})
        steps = php.build_set_cli_default(resource("php", "8.3", status=ResourceStatus.INSTALLED), {})
        self.assertIn("update-alternatives --set php /usr/bin/php8.3", commands(steps))


class DatabaseTests(unittest.TestCase):
    def test_prepare_generates_password_once(self) -> None:
        item = resource("database", "mysql")
        first = database.prepare_database(item, {})
        second = database.prepare_database(item, first)
        self.assertEqual(len(first["root_password"]), 32)
        self.assertEqual(first["root_password"], second["root_password"])
        self.assertEqual(first["port"], 3306)

    def test_unknown_engine_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            database.prepare_database(resource("database", "oracle"), {})

    def test_root_password_step_is_rerunnable(self) -> None:
        steps = database.build_install(resource("database", "mysql"), {"root_password": "s3cret"})
        step = next(s for s in steps if s.milestone == "configure_root_password")
        self.assertIn("MYSQL_PWD=s3cret mysql -u root -e 'SELECT 1;'", step.command)
        self.assertIn("||", step.command)

    def test_postgresql_uses_its_own_port(self) -> None:
        config = database.prepare_database(resource("database", "postgresql"), {})
        steps = database.build_install(resource("database", "postgresql"), config)
        self.assertIn("ufw allow 5432/tcp", "\n".join(commands(steps)))

    def test_cache_prepare_generates_password(self) -> None:
        config = database.prepare_cache(resource("cache", "redis"), {})
        self.assertEqual(config["port"], 6379)
        self.assertTrue(config["password"])


class FirewallTests(unittest.TestCase):
    def test_rule_specs(self) -> None:
        self.assertEqual(firewall.FirewallRule("8080").ufw_spec(), "allow 8080")
        self.assertEqual(firewall.FirewallRule("3000-3005", "tcp").ufw_spec(), "allow 3000:3005/tcp")
        self.assertEqual(
            firewall.FirewallRule("22", "tcp", "limit", "10.0.0.0/8").ufw_spec(),
            "limit from 10.0.0.0/8 to any port 22 proto tcp",
        )

    def test_port_validation(self) -> None:
        for value in ("0", "70000", "3005-3000", "http", "80-"):
            with self.assertRaises(ValidationError):
                firewall.parse_port(value)
        self.assertEqual(firewall.parse_port(" 443 "), "443")

    def test_range_needs_protocol(self) -> None:
        with self.assertRaises(ValidationError):
            firewall.parse_rule(resource("firewall_rule", "3000-3005"), {})

    def test_source_is_normalised(self) -> None:
        self.assertEqual(firewall.parse_source("10.0.0.7/8"), "10.0.0.0/8")
        self.assertIsNone(firewall.parse_source("any"))
        with self.assertRaises(ValidationError):
            firewall.parse_source("not-an-ip")

    def test_install_and_remove_share_rule_spec(self) -> None:
        item = resource("firewall_rule", "8080")
        config = {"protocol": "tcp", "name": "api"}
        install = commands(firewall.build_install_rule(item, config))
        remove = commands(firewall.build_remove_rule(item, config))
        self.assertEqual(install[1], "ufw allow 8080/tcp comment api")
        self.assertEqual(remove[1], "ufw delete allow 8080/tcp")


class SupervisorTests(unittest.TestCase):
    def test_program_config(self) -> None:
        text = supervisor.program_config("queue-worker", {"command": "php artisan queue:work", "processes": 3})
        self.assertIn("[program:queue-worker]", text)
        self.assertIn("numprocs=3", text)
        self.assertIn("user=provisioner", text)

    def test_invalid_inputs(self) -> None:
        with self.assertRaises(ValidationError):
            supervisor.program_name(resource("supervisor_task", "bad name!"), {})
        with self.assertRaises(ValidationError):
            supervisor.program_config("w", {"command": "run", "processes": 50})
        with self.assertRaises(ValidationError):
            supervisor.program_config("w", {"command": "run\nrm -rf /"})
        with self.assertRaises(ValidationError):
            supervisor.program_config("w", {"command": "run", "user": "Root User"})

    def test_remove_is_idempotent(self) -> None:
        steps = supervisor.build_remove_task(resource("supervisor_task", "queue-worker"), {})
        self.assertIn("rm -f /etc/supervisor/conf.d/queue-worker.conf", commands(steps))


class SchedulerTests(unittest.TestCase):
    def test_valid_cron_expressions(self) -> None:
        for expression in ("*/5 * * * *", "0 3 * * mon-fri", "15,45 8-18 1 jan,jul 0", "0 0 1 */3 *"):
            self.assertEqual(scheduler.validate_cron(expression), expression)

    def test_invalid_cron_expressions(self) -> None:
        for expression in ("* * * *", "60 * * * *", "* 24 * * *", "*/0 * * * *", "5-1 * * * *", "* * * foo *"):
            with self.assertRaises(ValidationError, msg=expression):
                scheduler.validate_cron(expression)

    def test_frequency_presets(self) -> None:
        self.assertEqual(scheduler.cron_expression({"frequency": "daily"}), "0 0 * * *")
        with self.assertRaises(ValidationError):
            scheduler.cron_expression({"frequency": "fortnightly"})

    def test_wrapper_script_applies_timeout(self) -> None:
        script = scheduler.wrapper_script("task-1", "php artisan backup", 300)
        self.assertIn("timeout 300 bash -c 'php artisan backup'", script)
        self.assertNotIn("timeout", scheduler.wrapper_script("task-1", "true", 0).splitlines()[-4])


class DeploymentTests(unittest.TestCase):
    def test_release_name_is_stable_across_retries(self) -> None:
        item = resource("deployment", "shop.example.com")
        first = deployment.prepare_release(item, {})
        self.assertEqual(deployment.prepare_release(item, first)["release"], first["release"])

    def test_run_uses_idempotent_forms(self) -> None:
        config = deployment.prepare_release(
            resource("deployment", "shop"), {"domain": "shop.example.com", "repository": "acme/shop"}
        )
        steps = deployment.build_run(resource("deployment", "shop"), config)
        joined = commands(steps)
        self.assertTrue(joined[0].startswith("mkdir -p "))
        self.assertIn("rm -rf", joined[1])
        self.assertIn("ln -sfn", joined[3])
        self.assertIn("/var/www/shop.example.com/current", joined[3])

    def test_rollback_needs_valid_target(self) -> None:
        with self.assertRaises(ValidationError):
            deployment.build_rollback(resource("deployment", "shop"), {"domain": "shop.example.com"})
        with self.assertRaises(ValidationError):
            deployment.build_rollback(
                resource("deployment", "shop"), {"domain": "shop.example.com", "target_release": "../etc"}
            )

    def test_script_lines_skip_comments(self) -> None:
        self.assertEqual(deployment.script_lines("# build\ncomposer install\n\nnpm ci\n"), ["composer install", "npm ci"])


class SiteDefaultTests(unittest.TestCase):
    def test_set_default_points_link_at_site(self) -> None:
        steps = sites.build_set_default(resource("site", "shop.example.com"), {"php_version": "8.3"})
        joined = commands(steps)
        self.assertIn("ln -sfn /var/www/shop.example.com/current /home/provisioner/default", joined[0])
        self.assertIn("fastcgi_pass unix:/run/php/php8.3-fpm.sock", joined[1])

    def test_unset_requires_default(self) -> None:
        with self.assertRaises(ValidationError):
            sites.build_unset_default(resource("site", "shop.example.com"), {})

    def test_unset_still_valid_after_demote_on_retry(self) -> None:
        item = resource("site", "shop.example.com")
        item.rollback_snapshot = {item.id: True}
        steps = sites.build_unset_default(item, {})
        self.assertEqual(steps[0].milestone, "demote_default")

    def test_placeholder_config_has_no_php(self) -> None:
        self.assertNotIn("fastcgi_pass", nginx.default_site_config("/home/provisioner/default/public"))

    def test_second_run_release_is_not_reused(self) -> None:
        self.assertNotEqual(deployment.new_release(), deployment.new_release())
        provisioner = deployment.PROVISIONERS[0]
        self.assertEqual(provisioner.transient_config, ("release",))


class SiteTests(unittest.TestCase):
    def test_prepare_fills_layout(self) -> None:
        config = sites.prepare_site(resource("site", "Shop.Example.com"), {})
        self.assertEqual(config["domain"], "shop.example.com")
        self.assertEqual(config["site_root"], "/var/www/shop.example.com")
        self.assertEqual(config["document_root"], "/var/www/shop.example.com/public")
        self.assertEqual(config["php_version"], "8.3")
        self.assertEqual(config["nginx_config_path"], "/etc/nginx/sites-available/shop.example.com")

    def test_install_writes_named_vhost(self) -> None:
        item = resource("site", "shop.example.com")
        joined = commands(sites.build_install(item, sites.prepare_site(item, {})))
        self.assertIn("server_name shop.example.com;", joined[1])
        self.assertIn("fastcgi_pass unix:/run/php/php8.3-fpm.sock", joined[1])
        self.assertIn("ln -sfn /etc/nginx/sites-available/shop.example.com /etc/nginx/sites-enabled/", joined[2])
        self.assertIn("rm -f /etc/nginx/sites-enabled/shop.example.com", joined[3])

    def test_static_site_has_no_php(self) -> None:
        item = resource("site", "docs.example.com")
        joined = commands(sites.build_install(item, sites.prepare_site(item, {"php_version": None})))
        self.assertNotIn("fastcgi_pass", joined[1])

    def test_paths_are_validated(self) -> None:
        item = resource("site", "shop.example.com")
        for site_root in ("/", "/var", "var/www/shop", "/var/www/../etc", "/var/www/shop; rm -rf /"):
            with self.subTest(site_root=site_root):
                with self.assertRaises(ValidationError):
                    sites.build_install(item, sites.prepare_site(item, {"site_root": site_root}))

    def test_remove_refuses_default_site(self) -> None:
        with self.assertRaises(ValidationError):
            sites.build_remove(resource("site", "shop.example.com", is_default=True), {})

    def test_remove_deletes_files_and_deploy_key(self) -> None:
        item = resource("site", "shop.example.com")
        joined = commands(sites.build_remove(item, {}))
        self.assertIn("rm -rf /var/www/shop.example.com /var/log/nginx/shop.example.com", joined[3])
        self.assertIn(sites.deploy_key_path(item, "provisioner"), joined[3])

    def test_deploy_key_generation_keeps_existing_key(self) -> None:
        item = resource("site", "shop.example.com")
        joined = commands(sites.build_generate_deploy_key(item, {}))
        key_path = f"/home/provisioner/.ssh/site_{item.id}_ed25519"
        self.assertIn(f"test -f {key_path} || ssh-keygen -t ed25519 -f {key_path} -N ''", joined[0])
        self.assertEqual(joined[2], f"cat {key_path}.pub")

    def test_git_uses_configured_deploy_key(self) -> None:
        steps = git.build_install(
            resource("site", "shop.example.com"),
            {"repository": "acme/shop", "deploy_key": "/home/provisioner/.ssh/site_1_ed25519"},
        )
        self.assertIn("ssh -i /home/provisioner/.ssh/site_1_ed25519", commands(steps)[1])
        with self.assertRaises(ValidationError):
            git.git_ssh_command("key; rm -rf /")


class NodeTests(unittest.TestCase):
    def test_supported_versions(self) -> None:
        self.assertEqual(node.node_version(resource("node", "22"), {}), "22")
        with self.assertRaises(ValidationError):
            node.node_version(resource("node", "99"), {})

    def test_composer_only_when_requested(self) -> None:
        without = commands(node.build_install(resource("node", "20"), {}))
        self.assertIn("setup_20.x", without[3])
        self.assertNotIn("getcomposer.org", without[-1])
        with_composer = commands(node.build_install(resource("node", "20"), {"install_composer": True}))
        self.assertIn("getcomposer.org", with_composer[-1])


class DatabaseUserTests(unittest.TestCase):
    CONFIG = {"engine": "mysql", "root_password": "r00tpass", "password": "userpass1", "schemas": ["shop"]}

    def test_mysql_user_is_created_and_granted(self) -> None:
        steps = database_users.build_install(resource("database_user", "shop"), dict(self.CONFIG))
        joined = commands(steps)
        self.assertIn("CREATE USER IF NOT EXISTS", joined[0])
        self.assertIn("SELECT, INSERT, UPDATE, DELETE ON `shop`.*", joined[1])
        self.assertNotIn("r00tpass", steps[0].display)
        self.assertNotIn("userpass1", steps[0].display)
        self.assertIn(REDACTED, steps[0].display)

    def test_postgresql_update_revokes_then_grants(self) -> None:
        config = {**self.CONFIG, "engine": "postgresql", "privileges": "read_only"}
        joined = commands(database_users.build_update(resource("database_user", "shop"), config))
        self.assertIn("ALTER USER shop WITH PASSWORD", joined[0])
        self.assertIn("REVOKE ALL PRIVILEGES ON DATABASE shop FROM shop", joined[1])
        self.assertIn("GRANT CONNECT ON DATABASE shop TO shop", joined[2])

    def test_invalid_inputs(self) -> None:
        bad = [
            {"username": "Robert'); DROP"},
            {"password": "it's-a-secret"},
            {"password": "short"},
            {"privileges": "superuser"},
            {"schemas": "shop"},
            {"schemas": ["shop`; DROP"]},
            {"host": "10.0.0.1' OR '1"},
            {"root_password": ""},
        ]
        for override in bad:
            with self.subTest(override=override):
                with self.assertRaises(ValidationError):
                    database_users.build_install(resource("database_user", "shop"), {**self.CONFIG, **override})

    def test_prepare_generates_password_once(self) -> None:
        item = resource("database_user", "shop")
        first = database_users.prepare_user(item, {"database_id": "db-1"})
        self.assertEqual(len(first["password"]), 32)
        self.assertEqual(database_users.prepare_user(item, first)["password"], first["password"])


if __name__ == "__main__":
    unittest.main()
