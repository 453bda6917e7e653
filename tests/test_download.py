"""Tests for currency checks, the retry state machine and the download manager."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from ustopo_core import (
    Attempting,
    Done,
    DownloadManager,
    Failed,
    check_currency,
    next_state,
)

PAYLOAD = b"%PDF-1.5 " + b"x" * 2048


class TestCheckCurrency:
    def test_matching_size_is_current(self, tmp_path, make_item) -> None:
        path = tmp_path / "map.pdf"
        path.write_bytes(PAYLOAD)
        assert check_currency(make_item(size=len(PAYLOAD)), path) == path

    @pytest.mark.parametrize("delta", [-1, 1])
    def test_off_by_one_byte_is_stale(self, tmp_path, make_item, delta) -> None:
        path = tmp_path / "map.pdf"
        path.write_bytes(PAYLOAD)
        assert check_currency(make_item(size=len(PAYLOAD) + delta), path) is None

    def test_missing_file_is_stale(self, tmp_path, make_item) -> None:
        assert check_currency(make_item(), tmp_path / "nope.pdf") is None

    def test_directory_is_stale(self, tmp_path, make_item) -> None:
        assert check_currency(make_item(), tmp_path) is None

    def test_no_path_is_stale(self, make_item) -> None:
        assert check_currency(make_item(), None) is None


class TestNextState:
    def test_success_finishes(self) -> None:
        assert next_state(Attempting(2), True, 3) == Done(2)

    def test_failure_below_budget_retries(self) -> None:
        assert next_state(Attempting(1), False, 3) == Attempting(2)

    def test_failure_at_budget_fails(self) -> None:
        assert next_state(Attempting(3), False, 3) == Failed(3)

    def test_terminal_states_stay_put(self) -> None:
        assert next_state(Done(1), False, 3) == Done(1)
        assert next_state(Failed(3), True, 3) == Failed(3)


@pytest.fixture
def staging(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def manager(transport, log, staging):
    def factory(max_attempts=3, retry_delay=5):
        sleep = MagicMock()
        dm = DownloadManager(transport, max_attempts=max_attempts, retry_delay=retry_delay,
                             log=log, sleep=sleep, staging_dir=str(staging))
        return dm, sleep

    return factory


class TestDownloadManager:
    def test_success_first_try(self, manager, session, make_response, make_zip, make_item, tmp_path, staging) -> None:
        session.get.return_value = make_response(make_zip({"map.pdf": PAYLOAD}))
        dm, sleep = manager()
        dest = tmp_path / "ID" / "Aberdeen.pdf"

        result = dm.download(make_item(size=len(PAYLOAD)), dest)

        assert result.ok
        assert result.attempts == 1
        assert result.path == dest
        assert result.size == len(PAYLOAD)
        assert dest.read_bytes() == PAYLOAD
        sleep.assert_not_called()
        assert list(staging.iterdir()) == []

    def test_recovers_after_failures(self, manager, session, make_response, make_zip, make_item, tmp_path) -> None:
        session.get.side_effect = [
            requests.ConnectionError("reset"),
            make_response(status=503, reason="Service Unavailable"),
            make_response(make_zip({"map.pdf": PAYLOAD})),
        ]
        dm, sleep = manager(max_attempts=3, retry_delay=5)

        result = dm.download(make_item(size=len(PAYLOAD)), tmp_path / "map.pdf")

        assert result.ok
        assert result.state == Done(3)
        assert session.get.call_count == 3
        assert len(result.errors) == 2
        assert sleep.call_count == 2
        sleep.assert_called_with(5)

    def test_always_failing(self, manager, session, make_response, make_item, tmp_path, staging) -> None:
        session.get.return_value = make_response(status=500, reason="Server Error")
        dm, sleep = manager(max_attempts=4, retry_delay=2)
        dest = tmp_path / "map.pdf"

        result = dm.download(make_item(), dest)

        assert not result.ok
        assert result.state == Failed(4)
        assert session.get.call_count == 4
        # one delay between each pair of attempts
        assert [c.args[0] for c in sleep.call_args_list] == [2, 2, 2]
        assert result.path is None
        assert not dest.exists()
        assert list(staging.iterdir()) == []

    def test_zero_delay_never_sleeps(self, manager, session, make_response, make_item, tmp_path) -> None:
        session.get.return_value = make_response(status=500, reason="Server Error")
        dm, sleep = manager(max_attempts=2, retry_delay=0)

        assert not dm.download(make_item(), tmp_path / "map.pdf").ok
        sleep.assert_not_called()

    def test_size_mismatch_deletes_placed_file(self, manager, session, make_response, make_zip, make_item, tmp_path) -> None:
        session.get.return_value = make_response(make_zip({"map.pdf": PAYLOAD}))
        dm, _ = manager(max_attempts=2, retry_delay=0)
        dest = tmp_path / "map.pdf"

        result = dm.download(make_item(size=len(PAYLOAD) + 1), dest)

        assert result.state == Failed(2)
        assert not dest.exists()
        assert "size mismatch" in result.errors[-1]

    def test_ambiguous_archive_is_retried(self, manager, session, make_response, make_zip, make_item, tmp_path) -> None:
        session.get.side_effect = [
            make_response(make_zip({"a.pdf": PAYLOAD, "b.pdf": PAYLOAD})),
            make_response(make_zip({"map.pdf": PAYLOAD})),
        ]
        dm, _ = manager(max_attempts=3, retry_delay=0)

        result = dm.download(make_item(size=len(PAYLOAD)), tmp_path / "map.pdf")

        assert result.state == Done(2)
        assert "unexpected entries" in result.errors[0]

    def test_budget_of_zero_still_tries_once(self, transport, session, make_response, make_zip, make_item, tmp_path) -> None:
        session.get.return_value = make_response(make_zip({"map.pdf": PAYLOAD}))
        dm = DownloadManager(transport, max_attempts=0, retry_delay=0)

        assert dm.download(make_item(size=len(PAYLOAD)), tmp_path / "map.pdf").ok
