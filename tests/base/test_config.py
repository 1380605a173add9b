"""Tests for publisher configuration loading."""

import argparse

import pytest
from pydantic import ValidationError

from repminer.base.config import add_args, load_config, load_ledger_factory
from repminer.publisher.local_ledger import LocalLedger


def _parse(*argv: str) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    add_args(parser)
    return parser.parse_args(list(argv))


class TestLoadConfig:

    def test_defaults_with_mock(self):
        config = load_config(_parse("--mock"), environ={})
        assert config.mock is True
        assert config.store.backend == "filesystem"
        assert config.store.snapshot_interval == 50
        assert config.oracle.port == 3000
        assert config.scheduler.poll_interval == 10.0
        assert config.scheduler.window_seconds == 86400
        assert config.scheduler.stuck_alarm_seconds == 600.0
        assert config.scheduler.disabled is False

    def test_cli_options(self):
        args = _parse(
            "--mock",
            "--store.backend", "sql",
            "--store.url", "sqlite:///x.db",
            "--oracle.port", "8080",
            "--scheduler.window_seconds", "3600",
        )
        config = load_config(args, environ={})
        assert config.store.backend == "sql"
        assert config.store.url == "sqlite:///x.db"
        assert config.oracle.port == 8080
        assert config.scheduler.window_seconds == 3600

    def test_env_overrides_cli(self):
        args = _parse("--mock", "--oracle.port", "8080")
        env = {
            "REPMINER_ORACLE__PORT": "9090",
            "REPMINER_SCHEDULER__POLL_INTERVAL": "2.5",
            "REPMINER_STORE__DATA_DIR": "/var/lib/repminer",
        }
        config = load_config(args, environ=env)
        assert config.oracle.port == 9090
        assert config.scheduler.poll_interval == 2.5
        assert config.store.data_dir == "/var/lib/repminer"

    def test_env_can_enable_mock(self):
        config = load_config(_parse(), environ={"REPMINER_MOCK": "true"})
        assert config.mock is True

    def test_ledger_required_without_mock(self):
        with pytest.raises(ValidationError):
            load_config(_parse(), environ={})
        config = load_config(_parse("--ledger.factory", "pkg.mod:make"), environ={})
        assert config.ledger.factory == "pkg.mod:make"

    def test_scheduler_disabled_needs_no_ledger(self):
        config = load_config(_parse("--scheduler.disabled"), environ={})
        assert config.scheduler.disabled is True
        assert config.ledger.factory is None

        from_env = load_config(_parse(), environ={"REPMINER_SCHEDULER__DISABLED": "true"})
        assert from_env.scheduler.disabled is True

    def test_sql_backend_requires_url(self):
        with pytest.raises(ValidationError):
            load_config(_parse("--mock", "--store.backend", "sql"), environ={})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            load_config(_parse("--mock"), environ={"REPMINER_STORE__SNAPSHOT_INTERVAL": "0"})


class TestLedgerFactory:

    def test_resolves_callable(self):
        factory = load_ledger_factory("repminer.publisher.local_ledger:LocalLedger")
        assert factory is LocalLedger

    @pytest.mark.parametrize("path", ["no_colon", ":LocalLedger", "repminer.publisher.local_ledger:"])
    def test_bad_paths(self, path):
        with pytest.raises(ValueError):
            load_ledger_factory(path)

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_ledger_factory("repminer.publisher.local_ledger:Nope")
