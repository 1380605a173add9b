"""Command-line and environment configuration for the publisher.

Options are registered as dotted argparse flags (``--store.data_dir``) and
collected into a PublisherConfig. Environment variables named
``REPMINER_<SECTION>__<NAME>`` take precedence over the command line.
"""

from __future__ import annotations

import argparse
import importlib
import os
from typing import Any, Callable, Literal, Mapping

import bittensor as bt
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "REPMINER_"


class StoreConfig(BaseModel):
    backend: Literal["filesystem", "sql"] = "filesystem"
    data_dir: str = "~/.repminer/data"
    url: str | None = Field(default=None, description="SQLAlchemy URL for the sql backend")
    snapshot_interval: int = Field(default=50, ge=1)
    cache_size: int = Field(default=16, ge=1)


class OracleConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=0, le=65535)


class SchedulerConfig(BaseModel):
    poll_interval: float = Field(default=10.0, gt=0)
    window_seconds: int = Field(default=86400, ge=0)
    stuck_alarm_seconds: float = Field(default=600.0, gt=0)
    round_index: int = Field(default=0, ge=0)
    disabled: bool = Field(default=False, description="Serve proofs only, never submit")


class LedgerConfig(BaseModel):
    factory: str | None = Field(default=None, description="module:callable returning a LedgerClient")


class PublisherConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    mock: bool = False

    @model_validator(mode="after")
    def _check_backends(self) -> PublisherConfig:
        if self.store.backend == "sql" and not self.store.url:
            raise ValueError("store.url is required for the sql backend")
        if not self.mock and not self.scheduler.disabled and not self.ledger.factory:
            raise ValueError("ledger.factory is required unless --mock or --scheduler.disabled is set")
        return self


def add_args(parser: argparse.ArgumentParser) -> None:
    """Adds publisher arguments to the parser."""

    parser.add_argument(
        "--store.backend",
        type=str,
        choices=["filesystem", "sql"],
        help="Where committed reputation versions are persisted.",
        default="filesystem",
    )
    parser.add_argument(
        "--store.data_dir",
        type=str,
        help="Directory for the filesystem version store.",
        default="~/.repminer/data",
    )
    parser.add_argument(
        "--store.url",
        type=str,
        help="SQLAlchemy database URL for the sql version store.",
        default=None,
    )
    parser.add_argument(
        "--store.snapshot_interval",
        type=int,
        help="Write a full snapshot every N versions (deltas in between).",
        default=50,
    )
    parser.add_argument(
        "--store.cache_size",
        type=int,
        help="Number of reconstructed historical versions kept in memory.",
        default=16,
    )

    parser.add_argument("--oracle.host", type=str, help="Proof oracle bind address.", default="0.0.0.0")
    parser.add_argument("--oracle.port", type=int, help="Proof oracle port.", default=3000)

    parser.add_argument(
        "--scheduler.poll_interval",
        type=float,
        help="Seconds between ledger polls and between transient-error retries.",
        default=10.0,
    )
    parser.add_argument(
        "--scheduler.window_seconds",
        type=int,
        help="Minimum age of the submission window before a new root is published.",
        default=86400,
    )
    parser.add_argument(
        "--scheduler.stuck_alarm_seconds",
        type=float,
        help="Log a stuck alarm after waiting this long on a single ledger call.",
        default=600.0,
    )
    parser.add_argument(
        "--scheduler.round_index",
        type=int,
        help="Round index passed with the confirmation.",
        default=0,
    )
    parser.add_argument(
        "--scheduler.disabled",
        action="store_true",
        help="Run the proof oracle only, without the submission loop.",
        default=False,
    )

    parser.add_argument(
        "--ledger.factory",
        type=str,
        help="module:callable that builds the LedgerClient.",
        default=None,
    )

    parser.add_argument(
        "--mock",
        action="store_true",
        help="Run against an in-process ledger.",
        default=False,
    )


def _sections(args: argparse.Namespace) -> dict[str, Any]:
    """Fold dotted argparse attributes into nested dicts."""
    out: dict[str, Any] = {}
    for name, value in vars(args).items():
        section, dot, field = name.partition(".")
        if not dot:
            out[name] = value
        elif section in PublisherConfig.model_fields:
            out.setdefault(section, {})[field] = value
    return out


def load_config(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> PublisherConfig:
    """Build the config from parsed args, then apply env overrides."""
    environ = os.environ if environ is None else environ
    raw = _sections(args)

    for section, model in PublisherConfig.model_fields.items():
        if section == "mock":
            continue
        sub_fields = model.annotation.model_fields
        for field in sub_fields:
            env_name = f"{ENV_PREFIX}{section.upper()}__{field.upper()}"
            if env_name in environ:
                raw.setdefault(section, {})[field] = environ[env_name]

    mock_env = environ.get(f"{ENV_PREFIX}MOCK")
    if mock_env is not None:
        raw["mock"] = mock_env.lower() in ("1", "true", "yes")

    # argparse leaves unset optionals as None; let pydantic defaults apply
    for section in ("store", "oracle", "scheduler", "ledger"):
        if section in raw:
            raw[section] = {k: v for k, v in raw[section].items() if v is not None}

    known = {k: v for k, v in raw.items() if k in PublisherConfig.model_fields}
    return PublisherConfig(**known)


def load_ledger_factory(path: str) -> Callable[..., Any]:
    """Resolve ``module:callable`` to the callable."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"ledger factory must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part)
    if not callable(factory):
        raise TypeError(f"ledger factory {path!r} is not callable")
    bt.logging.debug({"config": {"ledger_factory": path}})
    return factory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reputation root publisher")
    bt.logging.add_args(parser)
    add_args(parser)
    return parser


__all__ = [
    "ENV_PREFIX",
    "LedgerConfig",
    "OracleConfig",
    "PublisherConfig",
    "SchedulerConfig",
    "StoreConfig",
    "add_args",
    "build_parser",
    "load_config",
    "load_ledger_factory",
]
