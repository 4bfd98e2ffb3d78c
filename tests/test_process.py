"""Tests for process identity resolution."""

import pytest

from conftest import FakeProcessTable
from zooming_kittens.errors import ProcessNotFoundError
from zooming_kittens.process import ProcessIdentityResolver


def resolver_for(processes, sockets=(), **kwargs):
    table = FakeProcessTable(processes)
    resolver = ProcessIdentityResolver(
        process_names=("kitty",),
        table=table,
        socket_check=lambda pid: pid in sockets,
        **kwargs,
    )
    return resolver, table


class TestWalk:
    def test_reported_process_itself(self):
        resolver, _ = resolver_for({1: (0, "systemd"), 100: (1, "kitty")})

        resolved = resolver.resolve(100)

        assert resolved.pid == 100
        assert resolved.depth == 0
        assert resolved.name == "kitty"

    def test_ancestor_closest_first(self):
        resolver, _ = resolver_for({
            1: (0, "systemd"),
            50: (1, "kitty"),
            60: (50, "kitty"),
            70: (60, "wrapper"),
        })

        resolved = resolver.resolve(70)

        assert resolved.pid == 60
        assert resolved.depth == -1

    def test_descendant_breadth_first_lowest_pid(self):
        resolver, _ = resolver_for({
            1: (0, "systemd"),
            10: (1, "sh"),
            30: (10, "bash"),
            20: (10, "bash"),
            25: (20, "kitty"),
            40: (30, "kitty"),
            35: (30, "kitty"),
        })

        resolved = resolver.resolve(10)

        assert resolved.pid == 25
        assert resolved.depth == 2

    def test_ancestors_before_descendants(self):
        resolver, _ = resolver_for({
            1: (0, "systemd"),
            5: (1, "kitty"),
            10: (5, "sh"),
            11: (10, "kitty"),
        })

        assert resolver.resolve(10).pid == 5

    def test_socket_check_matches_any_name(self):
        resolver, _ = resolver_for({1: (0, "systemd"), 100: (1, ".kitty-wrapped")}, sockets={100})

        assert resolver.resolve(100).pid == 100

    def test_nothing_eligible(self):
        resolver, _ = resolver_for({1: (0, "systemd"), 100: (1, "foot")})

        with pytest.raises(ProcessNotFoundError) as exc_info:
            resolver.resolve(100)

        assert exc_info.value.reported_pid == 100

    def test_process_gone(self):
        resolver, _ = resolver_for({1: (0, "systemd")})

        with pytest.raises(ProcessNotFoundError):
            resolver.resolve(100)

    @pytest.mark.parametrize("pid", [0, -1, None])
    def test_invalid_pid(self, pid):
        resolver, _ = resolver_for({})

        with pytest.raises(ProcessNotFoundError):
            resolver.resolve(pid)

    def test_parent_cycle_terminates(self):
        resolver, _ = resolver_for({10: (11, "sh"), 11: (10, "sh")})

        with pytest.raises(ProcessNotFoundError):
            resolver.resolve(10)

    def test_max_depth_limits_walk(self):
        resolver, _ = resolver_for(
            {1: (0, "kitty"), 2: (1, "sh"), 3: (2, "sh"), 4: (3, "sh")},
            max_depth=2,
        )

        with pytest.raises(ProcessNotFoundError):
            resolver.resolve(4)


class TestCache:
    def test_hit_skips_snapshot(self):
        resolver, table = resolver_for({1: (0, "systemd"), 100: (1, "kitty")})

        resolver.resolve(100)
        resolver.resolve(100)

        assert table.snapshots == 1
        assert resolver.cache_hits == 1
        assert resolver.cache_misses == 1

    def test_stale_entry_is_revalidated(self):
        resolver, table = resolver_for({1: (0, "systemd"), 50: (1, "kitty"), 70: (50, "sh")})
        assert resolver.resolve(70).pid == 50

        del table.processes[50]
        table.processes[60] = (1, "kitty")
        table.processes[70] = (60, "sh")

        assert resolver.resolve(70).pid == 60
        assert table.snapshots == 2

    def test_failures_are_not_cached(self):
        resolver, table = resolver_for({1: (0, "systemd"), 100: (1, "foot")})

        with pytest.raises(ProcessNotFoundError):
            resolver.resolve(100)
        table.processes[100] = (1, "kitty")

        assert resolver.resolve(100).pid == 100

    def test_invalidate(self):
        resolver, table = resolver_for({1: (0, "kitty"), 10: (1, "sh"), 20: (1, "sh")})
        resolver.resolve(10)
        resolver.resolve(20)

        assert resolver.invalidate(1) == 2
        assert resolver.cached == {}
