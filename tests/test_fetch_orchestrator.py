"""Tests for fetch sessions: ordering, pacing, failure isolation, retry and cancellation."""

from unittest.mock import MagicMock

import pytest

import fetch_orchestrator
from address_book import ParsedAddress
from explorer_client import ApiError, EtherscanClient, TransportError
from factories import (
    EMPTY_PAYLOAD,
    EXTERNAL,
    USER_A,
    USER_B,
    make_response,
    native,
    native_record,
    ok_payload,
    token,
)
from fetch_orchestrator import (
    AddressDataset,
    FailureRecord,
    FetchOrchestrator,
    FetchProgress,
    SessionState,
    TransactionStats,
)
from ledger_generator import generate_ledger

USER_C = "0x" + "9" * 34 + "777777"


class FakeClient:
    """Stands in for EtherscanClient; records the call sequence into a shared log."""

    def __init__(self, log, native_by_addr=None, tokens_by_addr=None, errors=None):
        self.log = log
        self.native_by_addr = native_by_addr or {}
        self.tokens_by_addr = tokens_by_addr or {}
        self.errors = errors or {}   # (action, address) -> exception

    def _call(self, action, address, api_key, data):
        self.log.append((action, address, api_key))
        err = self.errors.get((action, address))
        if err is not None:
            raise err
        return list(data.get(address, []))

    def get_native_transfers(self, address, api_key=None):
        return self._call("txlist", address, api_key, self.native_by_addr)

    def get_token_transfers(self, address, api_key=None):
        return self._call("tokentx", address, api_key, self.tokens_by_addr)


def make_orchestrator(**client_kwargs):
    log = []
    client = FakeClient(log, **client_kwargs)
    orch = FetchOrchestrator(client=client, sleep=lambda s: log.append(("sleep", s)))
    return orch, client, log


def test_calls_are_sequential_and_paced():
    orch, _, log = make_orchestrator()

    orch.fetch_all([USER_A, USER_B], api_key="K")

    assert log == [
        ("txlist", USER_A, "K"),
        ("sleep", 0.3),
        ("tokentx", USER_A, "K"),
        ("sleep", 0.5),
        ("txlist", USER_B, "K"),
        ("sleep", 0.3),
        ("tokentx", USER_B, "K"),
    ]


def test_progress_is_reported_before_each_address():
    orch, _, log = make_orchestrator()
    events = []

    def on_progress(p):
        events.append(p)
        log.append(("progress", p.index))

    orch.fetch_all([f"{USER_A}:Main", USER_B], on_progress=on_progress)

    assert events == [
        FetchProgress(1, 2, USER_A, "Main"),
        FetchProgress(2, 2, USER_B, None),
    ]
    assert log[0] == ("progress", 1)
    assert log.index(("progress", 2)) > log.index(("tokentx", USER_A, None))
    assert events[0].label == "Main"


def test_partial_failure_keeps_successful_addresses():
    tx = native(n=1, frm=EXTERNAL, to=USER_A)
    orch, _, _ = make_orchestrator(
        native_by_addr={USER_A: [tx]},
        errors={("txlist", USER_B): ApiError("Invalid API Key")},
    )

    result = orch.fetch_all([USER_A, USER_B])

    assert [d.address for d in result.datasets] == [USER_A]
    assert result.datasets[0].native_transfers == (tx,)
    assert result.failures == (FailureRecord(USER_B, None, "Invalid API Key"),)
    assert orch.state is SessionState.COMPLETED

    ledger = generate_ledger(result)
    assert USER_A[-6:].upper() in ledger
    assert "Assets:Crypto:Ethereum:123456" not in ledger


def test_token_failure_discards_native_data_for_that_address():
    orch, client, log = make_orchestrator(
        native_by_addr={USER_A: [native()]},
        errors={("tokentx", USER_A): TransportError("HTTP 502: Bad Gateway")},
    )
    result = orch.fetch_all([USER_A])
    assert result.datasets == ()
    assert result.failures[0].error == "HTTP 502: Bad Gateway"


def test_invalid_input_addresses_raise_before_fetching():
    orch, _, log = make_orchestrator()
    with pytest.raises(ValueError):
        orch.fetch_all([USER_A, "garbage"])
    assert log == []
    assert orch.state is SessionState.IDLE


def test_state_transitions_and_reset():
    orch, _, _ = make_orchestrator()
    seen = []
    assert orch.state is SessionState.IDLE

    orch.fetch_all([USER_A], on_progress=lambda p: seen.append(orch.state))

    assert seen == [SessionState.RUNNING]
    assert orch.state is SessionState.COMPLETED
    assert len(orch.datasets) == 1

    orch.reset()
    assert orch.state is SessionState.IDLE
    assert orch.datasets == () and orch.failures == ()


def test_new_session_replaces_previous_results():
    orch, _, _ = make_orchestrator()
    orch.fetch_all([USER_A])
    orch.fetch_all([USER_B])
    assert [d.address for d in orch.datasets] == [USER_B]


def test_retry_success_moves_address_to_datasets():
    orch, client, log = make_orchestrator(
        errors={("txlist", USER_B): TransportError("timeout")},
    )
    orch.fetch_all([USER_A, f"{USER_B}:Savings"])
    assert [f.address for f in orch.failures] == [USER_B]

    del client.errors[("txlist", USER_B)]
    log.clear()
    outcome = orch.retry(USER_B)

    assert isinstance(outcome, AddressDataset)
    assert outcome.nickname == "Savings"
    assert orch.failures == ()
    assert [d.address for d in orch.datasets] == [USER_A, USER_B]
    assert log == [("txlist", USER_B, None), ("sleep", 0.3), ("tokentx", USER_B, None)]


def test_retry_failure_replaces_failure_record():
    orch, client, _ = make_orchestrator(errors={("txlist", USER_B): TransportError("timeout")})
    orch.fetch_all([f"{USER_B}:Savings"])

    client.errors[("txlist", USER_B)] = ApiError("Max rate limit reached")
    outcome = orch.retry(USER_B, api_key="K2")

    assert outcome == FailureRecord(USER_B, "Savings", "Max rate limit reached")
    assert orch.failures == (outcome,)
    assert orch.datasets == ()


def test_failed_retry_of_a_fetched_address_drops_its_dataset():
    orch, client, _ = make_orchestrator()
    orch.fetch_all([USER_A])
    client.errors[("tokentx", USER_A)] = TransportError("boom")

    orch.retry(USER_A)

    assert orch.datasets == ()
    assert [f.address for f in orch.failures] == [USER_A]


def test_retry_nickname_argument_wins():
    orch, _, _ = make_orchestrator()
    outcome = orch.retry(ParsedAddress(USER_A, "Old"), nickname="New")
    assert outcome.nickname == "New"


def test_cancel_stops_before_next_address():
    orch, _, log = make_orchestrator()

    def on_progress(p):
        if p.index == 2:
            orch.cancel()

    result = orch.fetch_all([USER_A, USER_B, USER_C], on_progress=on_progress)

    fetched = [entry[1] for entry in log if entry[0] == "txlist"]
    assert fetched == [USER_A, USER_B]
    assert [d.address for d in result.datasets] == [USER_A, USER_B]
    assert orch.state is SessionState.IDLE


def test_fetch_is_not_reentrant():
    orch, _, _ = make_orchestrator()
    errors = []

    def on_progress(p):
        with pytest.raises(RuntimeError):
            orch.fetch_all([USER_B])
        with pytest.raises(RuntimeError):
            orch.retry(USER_B)
        with pytest.raises(RuntimeError):
            orch.reset()
        errors.append(p.index)

    orch.fetch_all([USER_A], on_progress=on_progress)
    assert errors == [1]
    assert orch.state is SessionState.COMPLETED


def test_unexpected_error_leaves_session_idle():
    orch, client, _ = make_orchestrator(errors={("txlist", USER_A): KeyError("bug")})
    with pytest.raises(KeyError):
        orch.fetch_all([USER_A])
    assert orch.state is SessionState.IDLE
    orch.fetch_all([USER_B])
    assert orch.state is SessionState.COMPLETED


def test_stats():
    orch, _, _ = make_orchestrator(
        native_by_addr={USER_A: [native(n=1), native(n=2)]},
        tokens_by_addr={USER_A: [token(n=3)]},
        errors={("txlist", USER_B): TransportError("down")},
    )
    orch.fetch_all([USER_A, USER_B])
    assert orch.stats() == TransactionStats(
        total_addresses=1, native_transfers=2, token_transfers=1, failed_addresses=1,
    )


def test_empty_session_completes():
    orch, _, log = make_orchestrator()
    result = orch.fetch_all([])
    assert result.datasets == () and result.failures == ()
    assert log == []
    assert orch.state is SessionState.COMPLETED


def test_module_level_retry_one():
    log = []
    client = FakeClient(log, errors={("txlist", USER_A): ApiError("NOTOK")})
    outcome = fetch_orchestrator.retry_one(USER_A, nickname="Main", client=client)
    assert outcome == FailureRecord(USER_A, "Main", "NOTOK")


def test_session_over_real_client_with_mocked_http():
    session = MagicMock()
    session.get.side_effect = [
        make_response(ok_payload([native_record(n=1, frm=EXTERNAL, to=USER_A)])),
        make_response(EMPTY_PAYLOAD),
        make_response({"status": "0", "message": "NOTOK", "result": "Invalid API Key"}),
    ]
    client = EtherscanClient(api_key="KEY", session=session, sleep=lambda s: None)
    orch = FetchOrchestrator(client=client, sleep=lambda s: None)

    result = orch.fetch_all([f"{USER_A}:Main", USER_B])

    assert len(result.datasets) == 1
    assert len(result.datasets[0].native_transfers) == 1
    assert result.failures == (FailureRecord(USER_B, None, "Invalid API Key"),)
    actions = [c.kwargs["params"]["action"] for c in session.get.call_args_list]
    assert actions == ["txlist", "tokentx", "txlist"]
