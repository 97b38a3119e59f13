"""Stream connection registry tests."""

from __future__ import annotations

from unittest.mock import MagicMock

from nudgr.stream.registry import ConnectionRegistry


def _reconciler(close_result: bool = True) -> MagicMock:
    reconciler = MagicMock()
    reconciler.close.return_value = close_result
    return reconciler


class TestConnectionRegistry:
    def test_add_and_remove(self) -> None:
        reg = ConnectionRegistry()
        reg.add("c1", 1, _reconciler())
        reg.add("c2", 1, _reconciler())
        reg.add("c3", 2, _reconciler())
        assert reg.connection_count == 3
        assert reg.user_connection_count(1) == 2
        assert reg.get_stats() == {"total_connections": 3, "unique_users": 2}

        assert reg.remove("c1") is True
        assert reg.remove("c1") is False
        assert reg.user_connection_count(1) == 1

        reg.remove("c2")
        assert reg.user_connection_count(1) == 0
        assert reg.get_stats()["unique_users"] == 1

    def test_wake_user_only_touches_that_user(self) -> None:
        reg = ConnectionRegistry()
        mine, theirs = _reconciler(), _reconciler()
        reg.add("c1", 1, mine)
        reg.add("c2", 2, theirs)

        assert reg.wake_user(1) == 1
        mine.wake.assert_called_once()
        theirs.wake.assert_not_called()
        assert reg.wake_user(99) == 0

    def test_close_all_counts_first_closes(self) -> None:
        reg = ConnectionRegistry()
        reg.add("c1", 1, _reconciler(close_result=True))
        reg.add("c2", 2, _reconciler(close_result=False))
        assert reg.close_all("server_shutdown") == 1
