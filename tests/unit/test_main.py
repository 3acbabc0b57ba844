"""
Tests for command-line parsing and flag translation.
"""

from __future__ import annotations

import pytest

from replguard.config import ReplGuardConfig
from replguard.main import build_parser, config_overrides, scope_from_args, throttle_from_args
from replguard.primitives.fleet import ScopeKind


def _parse(*argv: str):
    return build_parser().parse_args(list(argv))


class TestParser:
    def test_modes(self):
        for mode in ("audit", "repair", "verify", "audit-repair-verify"):
            assert _parse(mode).mode == mode

    def test_unknown_mode_rejected(self):
        with pytest.raises(SystemExit):
            _parse("destroy")

    def test_nodes_and_site_exclusive(self):
        with pytest.raises(SystemExit):
            _parse("audit", "--nodes", "dc01", "--site", "HQ")


class TestScope:
    def test_explicit_nodes(self):
        scope = scope_from_args(_parse("audit", "--nodes", "dc01, dc02,,"))
        assert scope.kind == ScopeKind.EXPLICIT
        assert list(scope.nodes) == ["dc01", "dc02"]

    def test_site(self):
        scope = scope_from_args(_parse("audit", "--site", "Branch"))
        assert scope.kind == ScopeKind.SITE
        assert scope.site == "Branch"

    def test_fleet_by_default(self):
        assert scope_from_args(_parse("audit")).kind == ScopeKind.FLEET


class TestOverrides:
    def test_no_flags_no_overrides(self):
        assert config_overrides(_parse("audit")) == {}

    def test_healing_flags(self):
        overrides = config_overrides(_parse(
            "repair", "--policy", "aggressive", "--dry-run", "--no-rollback", "--verify-wait", "0",
        ))
        assert overrides["healing"] == {
            "policy": "aggressive",
            "dry_run": True,
            "rollback_enabled": False,
            "verify_wait_s": 0.0,
        }
        config = ReplGuardConfig(**overrides)
        assert config.healing.dry_run

    def test_throttle_precedence(self):
        config = ReplGuardConfig()
        assert throttle_from_args(_parse("audit"), config) == config.collector.throttle
        assert throttle_from_args(_parse("audit", "--fast"), config) == config.collector.fast_throttle
        assert throttle_from_args(_parse("audit", "--fast", "--throttle", "3"), config) == 3
