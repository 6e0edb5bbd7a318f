"""
Tests for blocked-model policy and fallback selection.
"""

from datetime import datetime, timedelta, timezone

from model_gate.core.block_policy import BlockEntry, BlockPolicy

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_policy(blocked=(), fallback_order=("gpt-4.1", "gpt-codex"), default_model=None):
    return BlockPolicy(
        entries=[BlockEntry(model=m, blocked_until=until, reason="freeze") for m, until in blocked],
        fallback_order=fallback_order,
        default_model=default_model
    )


class TestBlockStatus:
    """Test block status queries."""

    def test_unlisted_model_is_unblocked(self):
        assert not make_policy().status("gpt-5", NOW).blocked

    def test_future_block_is_active(self):
        until = NOW + timedelta(hours=1)
        status = make_policy([("gpt-5", until)]).status("gpt-5", NOW)
        assert status.blocked
        assert status.reason == "freeze"
        assert status.blocked_until == until

    def test_past_block_is_expired(self):
        """A block in the past is reported unblocked without any pruning."""
        policy = make_policy([("gpt-5", datetime(2020, 1, 1, tzinfo=timezone.utc))])
        status = policy.status("gpt-5", datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert not status.blocked
        assert status.expired

    def test_block_ends_exactly_at_blocked_until(self):
        policy = make_policy([("gpt-5", NOW)])
        assert not policy.status("gpt-5", NOW).blocked
        assert policy.status("gpt-5", NOW - timedelta(microseconds=1)).blocked

    def test_naive_timestamps_are_utc(self):
        policy = make_policy([("gpt-5", datetime(2025, 1, 1, 13, 0))])
        assert policy.status("gpt-5", NOW).blocked


class TestFallbackFor:
    """Test deterministic fallback selection."""

    def test_first_unblocked_in_declared_order(self):
        assert make_policy().fallback_for("gpt-5", NOW) == "gpt-4.1"

    def test_skips_requested_model(self):
        assert make_policy().fallback_for("gpt-4.1", NOW) == "gpt-codex"

    def test_skips_blocked_fallbacks(self):
        policy = make_policy([("gpt-4.1", NOW + timedelta(days=1))])
        assert policy.fallback_for("gpt-5", NOW) == "gpt-codex"

    def test_expired_fallback_block_is_usable(self):
        policy = make_policy([("gpt-4.1", NOW - timedelta(days=1))])
        assert policy.fallback_for("gpt-5", NOW) == "gpt-4.1"

    def test_default_model_when_list_exhausted(self):
        policy = make_policy(
            [("gpt-4.1", NOW + timedelta(days=1)), ("gpt-codex", NOW + timedelta(days=1))],
            default_model="tiny"
        )
        assert policy.fallback_for("gpt-5", NOW) == "tiny"

    def test_none_when_nothing_usable(self):
        policy = make_policy([("gpt-4.1", NOW + timedelta(days=1))], fallback_order=("gpt-4.1",))
        assert policy.fallback_for("gpt-5", NOW) is None

    def test_never_returns_requested_or_blocked(self):
        future = NOW + timedelta(days=1)
        models = ["a", "b", "c", "d"]
        for blocked in ([], ["a"], ["a", "b"], ["b", "d"], models):
            policy = make_policy([(m, future) for m in blocked], fallback_order=models, default_model="a")
            for requested in models:
                choice = policy.fallback_for(requested, NOW)
                assert choice != requested
                if choice is not None:
                    assert not policy.status(choice, NOW).blocked


class TestPruneExpired:
    """Test physical removal of expired entries."""

    def test_prune_keeps_active_entries(self):
        policy = make_policy([
            ("old", NOW - timedelta(days=1)),
            ("new", NOW + timedelta(days=1)),
        ])
        pruned = policy.prune_expired(NOW)
        assert [e.model for e in pruned.entries] == ["new"]
        assert pruned.fallback_order == policy.fallback_order
        assert len(policy.entries) == 2
